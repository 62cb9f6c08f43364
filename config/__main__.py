"""Command line interface for testing configuration loading"""
from . import load_settings_conf
from pathlib import Path

def main():
    """Display loaded configuration"""
    settings = load_settings_conf()

    print("\nSettings Configuration:")
    print("-" * 50)
    for key, value in settings.items():
        print(f"{key}: {value}")

    # Save example configuration file
    examples_dir = Path("examples")
    examples_dir.mkdir(exist_ok=True)

    with open(examples_dir / "settings.conf.example", "w") as f:
        f.write("""[DEFAULT]
# Record store (CockroachDB)
db_url = postgresql://root@localhost:26257/marketplace?sslmode=disable
# Chain node JSON-RPC endpoint
rpc_url = http://127.0.0.1:8545
marketplace_address = 0xf4351BA9Ca701Cf689442833CDA5F7FF18C2e00C
ipfs_gateway = https://ipfs.io/ipfs/
poll_interval = 2
max_concurrent_calls = 16
serialize_per_item = true
force_recreate = false
""")

if __name__ == "__main__":
    main()
