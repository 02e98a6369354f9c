"""Core payment-link, ledger and reconciliation logic."""
