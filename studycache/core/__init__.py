"""Configuration, logging, errors and wiring for the cache subsystem."""
