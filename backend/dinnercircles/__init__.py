"""Dinner Circles: opt-in pool and circle matching for communal dinner events."""
