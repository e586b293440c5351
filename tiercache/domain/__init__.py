"""Domain layer for the tiercache package."""
