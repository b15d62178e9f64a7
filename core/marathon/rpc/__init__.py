"""Stdio RPC surface for editors."""
