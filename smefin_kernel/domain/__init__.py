"""Domain layer - pure value objects, enums and the clock abstraction."""
