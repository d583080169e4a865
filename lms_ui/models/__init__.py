"""
Data models for LMS UI
"""
