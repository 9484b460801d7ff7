"""Host-facing escrow tools."""
