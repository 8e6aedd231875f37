"""
Identity resolution for AT Protocol subjects.
"""
