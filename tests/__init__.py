"""
Test suite for serlink.

Unit tests drive sessions through in-memory handles; integration tests
bridge real TCP sockets to pseudo-terminal pairs on POSIX.
"""
