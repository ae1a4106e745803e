"""Core BESS sizing services: input normalization and the daily dispatch LP."""
