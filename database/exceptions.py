"""Database exceptions."""

class DatabaseError(Exception):
    """Base exception for database errors."""
    pass

class DatabaseSchemaError(DatabaseError):
    """Raised when schema initialization or migration fails."""
    pass

class InvalidFilterError(DatabaseError):
    """Raised when a filter or record names a column the table does not have."""
    pass
