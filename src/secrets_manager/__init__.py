"""
secrets-manager: export and import secret files through encrypted backups.

Every secret leaves the machine as an age-encrypted file with a checksum
ledger next to it, and comes back only after its checksums agree.
"""

__version__ = "0.1.0"

CONFIG_ENV = "SECRETS_MANAGER_CONFIG"
PROFILE_ENV = "SECRETS_MANAGER_PROFILE"
PASSPHRASE_ENV = "SECRETS_MANAGER_PASSPHRASE"

CONFIG_DIR = "~/.config"
