"""Write-side services: each flushes within the caller's transaction."""
