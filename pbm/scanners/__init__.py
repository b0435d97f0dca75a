"""Sheet scanners: one strategy per sheet type, looked up through the registry."""
