"""
Change-detection and adaptive scheduling engine for competitor monitoring.
"""
