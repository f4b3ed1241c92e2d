"""
Domain layer: models and storage ports.
"""
