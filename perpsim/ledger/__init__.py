"""Wallet and position ledger: validation, margin math and settlement."""
