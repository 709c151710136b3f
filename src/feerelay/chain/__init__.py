"""Ledger access: ABI table, fee-delegated codec, RPC client and relay."""
