"""Marketplace policy — parameter loading and invariant checks."""

from rentloop.policy.resolver import PolicyResolver

__all__ = ["PolicyResolver"]
