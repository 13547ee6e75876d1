"""qrlink - link a messaging account by QR or pairing code and capture its credentials once."""

__version__ = "0.1.0"
