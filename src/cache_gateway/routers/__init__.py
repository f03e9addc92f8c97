"""
Cache Gateway - API Routers
"""
