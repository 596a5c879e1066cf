"""toadstool - bridge between ACP-style clients and the Cursor CLI agent."""

__version__ = "0.1.0"
