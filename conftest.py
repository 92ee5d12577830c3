"""
Shared pytest setup for ChatCore unit tests.

Configuration is read once at import time, so the environment is pinned here
before any test module imports `chatcore`: an in-memory SQLite database (each
test reopens the shared connection and gets a fresh schema) and no background
sweep, so tests drive recovery explicitly.
"""
import os

os.environ["CHATCORE_DB"] = ":memory:"
os.environ["CHATCORE_STREAM_RECOVERY"] = "false"
os.environ["CHATCORE_RELOAD"] = "0"
