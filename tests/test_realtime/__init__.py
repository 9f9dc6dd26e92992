"""
Tests for the dashsync Realtime Module
======================================

Change feeds, scope rules and the change event subscriber.
"""
