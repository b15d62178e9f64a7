"""Domain models shared by the store, engine and outer surfaces."""
