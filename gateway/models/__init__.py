"""Typed request/response and domain models."""
