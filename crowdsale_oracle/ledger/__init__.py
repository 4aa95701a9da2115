"""Ledger access: interfaces, account resolution, JSON-RPC and in-memory clients."""
