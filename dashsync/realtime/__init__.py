"""
dashsync Realtime

Change feeds, scope rules and the subscriber that feeds change events
into the invalidation scheduler.
"""

from dashsync.realtime.feed import ChangeFeed, InMemoryChangeFeed, RedisChangeFeed
from dashsync.realtime.rules import ScopeRule, default_scope_rules, fallback_rule
from dashsync.realtime.subscriber import ChangeEventSubscriber, SubscriberStats

__all__ = [
    "ChangeFeed",
    "InMemoryChangeFeed",
    "RedisChangeFeed",
    "ScopeRule",
    "default_scope_rules",
    "fallback_rule",
    "ChangeEventSubscriber",
    "SubscriberStats",
]
