"""Signing strategies: direct key, hardware wallet, multisig proposal."""
