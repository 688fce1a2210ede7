"""Database layer: declarative base, engine factory, storage guards and policies."""
