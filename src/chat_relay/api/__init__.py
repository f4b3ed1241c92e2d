"""
API layer: REST routes, the live relay server and the application factory.
"""
