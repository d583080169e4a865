"""
LMS UI - web front-end for the Learning Management System
"""
