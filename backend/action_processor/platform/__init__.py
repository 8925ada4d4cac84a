"""Platform-level helpers: secret decryption and log redaction."""
