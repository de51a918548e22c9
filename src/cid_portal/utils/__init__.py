"""Utility helpers."""

from .hash import blake3_digest, blake3_hexdigest
from .svg import render_captcha_svg

__all__ = ["blake3_digest", "blake3_hexdigest", "render_captcha_svg"]
