"""Storage pool and disk access for pool migrations."""
