"""
keyman - SSH key manager for swapping between key pairs.

keyman provides:
- A registry of named SSH key pairs (~/.keyman/keys.json)
- One active key, linked or copied into the SSH client's default identity
- Safe removal that never deletes a private key unless asked to
"""

__version__ = "0.2.0"
