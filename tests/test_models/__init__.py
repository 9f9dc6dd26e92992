"""
Tests for dashsync Models
=========================
"""
