"""Infrastructure adapters for tiercache levels."""
