"""Keystore relay: multi-device secp256r1 keystore codecs, wallet client and fee relay."""

__version__ = "0.1.0"
