"""FormRelay HTTP service."""
