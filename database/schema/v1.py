"""Schema v1 - Initial marketplace index schema.

This version includes tables for:
- Collections registered with the marketplace
- Items and their current owner, price and metadata
- Offers, one per (item, offerer)

Numeric chain values other than the collection index are kept as decimal
strings since they routinely exceed INT8.
"""

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'collections',
            'columns': [
                {'name': 'id', 'type': 'INT8', 'primary_key': True},
                {'name': 'nft_collection', 'type': 'TEXT', 'nullable': False}
            ]
        },
        {
            'name': 'items',
            'columns': [
                {'name': 'id', 'type': 'TEXT', 'primary_key': True},
                {'name': 'nft_contract', 'type': 'TEXT', 'nullable': False},
                {'name': 'token_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'owner', 'type': 'TEXT', 'nullable': False},
                {'name': 'price', 'type': 'TEXT', 'nullable': False, 'default': "'0'"},
                {'name': 'name', 'type': 'TEXT'},
                {'name': 'description', 'type': 'TEXT'},
                {'name': 'image', 'type': 'TEXT'}
            ],
            'indexes': [
                {'name': 'idx_items_owner', 'columns': ['owner']},
                {'name': 'idx_items_contract_token', 'columns': ['nft_contract', 'token_id']}
            ]
        },
        {
            'name': 'offers',
            'columns': [
                {'name': 'item_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'offerer', 'type': 'TEXT', 'nullable': False},
                {'name': 'seller', 'type': 'TEXT', 'nullable': False},
                {'name': 'price', 'type': 'TEXT', 'nullable': False},
                {'name': 'is_accepted', 'type': 'BOOL', 'nullable': False, 'default': 'false'}
            ],
            'primary_key': ['item_id', 'offerer'],
            'indexes': [
                {'name': 'idx_offers_item', 'columns': ['item_id']},
                {'name': 'idx_offers_seller', 'columns': ['seller']}
            ]
        }
    ]
}
