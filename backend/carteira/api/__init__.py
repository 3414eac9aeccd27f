"""HTTP layer for the Carteira service."""
