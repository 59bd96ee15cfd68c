"""Core building blocks: configuration, exceptions, identifiers and result types."""
