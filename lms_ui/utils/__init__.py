"""
Configuration and logging utilities
"""
