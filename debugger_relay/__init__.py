"""Debugger relay between a React Native packager and sandboxed Node workers."""

__version__ = "0.3.0"
