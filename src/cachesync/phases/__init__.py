"""Lifecycle phases of the agent: install, activate, intercept, prefetch.

Each module exposes plain async functions taking an ``AgentContext``. No
state lives here; the agent in ``cachesync.agent`` sequences the calls.
"""
