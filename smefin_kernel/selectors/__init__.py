"""Read-only selectors returning DTOs."""
