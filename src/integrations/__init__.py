"""
External model integrations.
"""
