"""Core types: steps, lazy step builders and exceptions."""
