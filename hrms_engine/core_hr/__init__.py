"""Core HR — departments and employees."""
