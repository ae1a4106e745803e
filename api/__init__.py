"""HTTP entrypoints for the BESS sizing engine."""
