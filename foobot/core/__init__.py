"""Core infrastructure: config, logging, store, renderer, dispatch and session."""
