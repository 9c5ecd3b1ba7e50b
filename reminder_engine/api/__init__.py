"""
API routers for the reminder engine.
"""
