"""
CLI 入口（`companion-bridge`）。
"""

from __future__ import annotations
