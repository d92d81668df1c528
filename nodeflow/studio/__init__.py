"""HTTP transport for the nodeflow engine."""
