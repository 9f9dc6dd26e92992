"""
Tests for the dashsync Resilience Module
========================================

Test suite covering:
- Caching (query cache, invalidation scheduler)
- Retry with exponential backoff
"""
