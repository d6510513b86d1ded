"""medseal - selective, revocable access to encrypted records.

Documents are sealed under a per-document key (DEK) that is wrapped for each
authorized principal. Authorization state lives on an external ledger and
ciphertext on a content-addressed blob store; this package implements the
key rotation and revocation protocol between the two.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
