"""
Core modules for AI Usage Monitor.

This package contains the usage cache, retry scheduling, pricing,
cost accounting, credential watching and polling orchestration.
"""
