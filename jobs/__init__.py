"""Background workers for the billing service."""
