"""
Host 侧（supervisor + 同步 client + session/context）。
"""

from __future__ import annotations
