"""Local building blocks: config, key mapping, change ledger, filesystem mirror."""
