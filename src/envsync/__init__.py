"""envsync - client-side encrypted synchronisation of environment secrets.

Developers edit plaintext `.env` files locally; envsync pushes them to a
remote env store as AES ciphertext under a project-scoped key and pulls
them back, detecting drift with plaintext hashes and versions.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
