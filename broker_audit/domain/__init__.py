"""Domain layer: audit record model, validators, schemas. No infrastructure."""
