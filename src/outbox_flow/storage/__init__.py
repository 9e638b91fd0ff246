"""SQLite storage primitives shared by the issue store and the KV cache."""
