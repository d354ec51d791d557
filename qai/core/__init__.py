"""qai.core — data model, error taxonomy and session state."""
