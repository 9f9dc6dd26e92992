"""
Tests for the dashsync Kernel
"""
