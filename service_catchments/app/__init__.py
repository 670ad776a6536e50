"""
Catchment Cache service application.
"""
