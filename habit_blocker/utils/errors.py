#!/usr/bin/env python3
"""Exceptions raised inside the blocker daemon.

Permission problems on the hosts file are reported with the builtin
PermissionError, everything else derives from BlockerError.
"""


class BlockerError(Exception):
    """Base class for daemon errors"""


class TransientFetchError(BlockerError):
    """The task source could not be reached or returned something unusable"""


class CorruptResourceError(BlockerError):
    """The managed block markers in the hosts file are malformed"""


class IPCProtocolError(BlockerError):
    """A client sent a command the daemon does not understand"""


class StartupError(BlockerError):
    """The daemon cannot start (directories, socket bind)"""
