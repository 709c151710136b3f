"""Persistence for transfers, used nonces and relayed operations."""
