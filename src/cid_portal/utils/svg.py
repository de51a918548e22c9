# src/cid_portal/utils/svg.py
"""Render CAPTCHA text as a distorted SVG image.

Glyphs are emitted as jittered stroke paths rather than ``<text>`` nodes, so
the answer never appears in the markup.
"""

from __future__ import annotations

import random
from typing import Final

Point = tuple[float, float]

GLYPH_WIDTH: Final[float] = 4.0
GLYPH_HEIGHT: Final[float] = 6.0

# Stroke outlines on a 4x6 grid, origin top-left.
GLYPHS: Final[dict[str, tuple[tuple[Point, ...], ...]]] = {
    "2": (((0, 1), (1, 0), (3, 0), (4, 1), (4, 2), (0, 6), (4, 6)),),
    "3": (((0, 0), (4, 0), (2, 2.5), (4, 3.5), (4, 5), (3, 6), (1, 6), (0, 5)),),
    "4": (((3, 6), (3, 0), (0, 4), (4, 4)),),
    "5": (((4, 0), (0, 0), (0, 2.5), (3, 2.5), (4, 3.5), (4, 5), (3, 6), (0, 6)),),
    "6": (((3.5, 0), (1, 0), (0, 2), (0, 5), (1, 6), (3, 6), (4, 5), (4, 3.5), (3, 2.5), (0, 3)),),
    "7": (((0, 0), (4, 0), (1.5, 6)),),
    "8": (
        ((1, 0), (3, 0), (4, 1), (4, 2), (3, 3), (1, 3), (0, 2), (0, 1), (1, 0)),
        ((1, 3), (0, 4), (0, 5), (1, 6), (3, 6), (4, 5), (4, 4), (3, 3)),
    ),
    "9": (((4, 3), (1, 3), (0, 2), (0, 1), (1, 0), (3, 0), (4, 1), (4, 5), (3, 6), (0.5, 6)),),
    "A": (((0, 6), (2, 0), (4, 6)), ((1, 3.5), (3, 3.5))),
    "B": (
        ((0, 0), (0, 6), (3, 6), (4, 5), (4, 4), (3, 3), (0, 3)),
        ((0, 0), (3, 0), (4, 1), (4, 2), (3, 3)),
    ),
    "C": (((4, 1), (3, 0), (1, 0), (0, 1), (0, 5), (1, 6), (3, 6), (4, 5)),),
    "D": (((0, 0), (0, 6), (2.5, 6), (4, 4.5), (4, 1.5), (2.5, 0), (0, 0)),),
    "E": (((4, 0), (0, 0), (0, 6), (4, 6)), ((0, 3), (3, 3))),
    "F": (((4, 0), (0, 0), (0, 6)), ((0, 3), (3, 3))),
    "G": (((4, 1), (3, 0), (1, 0), (0, 1), (0, 5), (1, 6), (3, 6), (4, 5), (4, 3), (2, 3)),),
    "H": (((0, 0), (0, 6)), ((4, 0), (4, 6)), ((0, 3), (4, 3))),
    "J": (((1, 0), (4, 0)), ((3, 0), (3, 5), (2, 6), (1, 6), (0, 5))),
    "K": (((0, 0), (0, 6)), ((4, 0), (0, 3.5)), ((1.2, 2.8), (4, 6))),
    "L": (((0, 0), (0, 6), (4, 6)),),
    "M": (((0, 6), (0, 0), (2, 3), (4, 0), (4, 6)),),
    "N": (((0, 6), (0, 0), (4, 6), (4, 0)),),
    "P": (((0, 6), (0, 0), (3, 0), (4, 1), (4, 2), (3, 3), (0, 3)),),
    "Q": (
        ((1, 0), (3, 0), (4, 1), (4, 5), (3, 6), (1, 6), (0, 5), (0, 1), (1, 0)),
        ((2.5, 4.5), (4, 6)),
    ),
    "R": (((0, 6), (0, 0), (3, 0), (4, 1), (4, 2), (3, 3), (0, 3)), ((2, 3), (4, 6))),
    "S": (
        (
            (4, 1), (3, 0), (1, 0), (0, 1), (0, 2), (1, 3),
            (3, 3), (4, 4), (4, 5), (3, 6), (1, 6), (0, 5),
        ),
    ),
    "T": (((0, 0), (4, 0)), ((2, 0), (2, 6))),
    "U": (((0, 0), (0, 5), (1, 6), (3, 6), (4, 5), (4, 0)),),
    "V": (((0, 0), (2, 6), (4, 0)),),
    "W": (((0, 0), (1, 6), (2, 3), (3, 6), (4, 0)),),
    "X": (((0, 0), (4, 6)), ((4, 0), (0, 6))),
    "Y": (((0, 0), (2, 3), (4, 0)), ((2, 3), (2, 6))),
    "Z": (((0, 0), (4, 0), (0, 6), (4, 6)),),
}

INK_COLOURS: Final[tuple[str, ...]] = (
    "#1b4f72", "#7b241c", "#145a32", "#4a235a", "#7e5109", "#212f3d", "#922b21", "#0e6251",
)


def _fmt(value: float) -> str:
    return f"{value:.1f}"


def _glyph_path(
    char: str,
    rng: random.Random,
    *,
    origin_x: float,
    origin_y: float,
    scale: float,
) -> str:
    commands: list[str] = []
    for stroke in GLYPHS[char]:
        for index, (gx, gy) in enumerate(stroke):
            x = origin_x + (gx + rng.uniform(-0.18, 0.18)) * scale
            y = origin_y + (gy + rng.uniform(-0.18, 0.18)) * scale
            commands.append(f"{'M' if index == 0 else 'L'}{_fmt(x)} {_fmt(y)}")
    return " ".join(commands)


def render_captcha_svg(
    text: str,
    rng: random.Random,
    *,
    width: int,
    height: int,
    font_size: int,
    noise_lines: int,
    background: str,
) -> str:
    """Return an SVG document drawing ``text`` with noise and per-glyph distortion.

    Args:
        text: Characters to draw; each must exist in :data:`GLYPHS`.
        rng: Random source for layout jitter.
        width: Image width in pixels.
        height: Image height in pixels.
        font_size: Nominal glyph height in pixels.
        noise_lines: Number of curved noise strokes.
        background: Fill colour for the background.

    Raises:
        KeyError: If ``text`` contains a character without a glyph outline.
    """
    parts = [
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{width}" height="{height}" '
        f'viewBox="0 0 {width} {height}">',
        f'<rect width="100%" height="100%" fill="{background}"/>',
    ]
    for _ in range(noise_lines):
        start = (rng.uniform(0, width * 0.2), rng.uniform(0, height))
        control = (rng.uniform(width * 0.2, width * 0.8), rng.uniform(0, height))
        end = (rng.uniform(width * 0.8, width), rng.uniform(0, height))
        parts.append(
            f'<path d="M{_fmt(start[0])} {_fmt(start[1])} Q{_fmt(control[0])} {_fmt(control[1])} '
            f'{_fmt(end[0])} {_fmt(end[1])}" stroke="{rng.choice(INK_COLOURS)}" '
            f'stroke-width="{_fmt(rng.uniform(1.0, 2.2))}" fill="none"/>'
        )

    glyph_height = font_size * 0.7
    scale = glyph_height / GLYPH_HEIGHT
    slot = width / (len(text) + 1)
    for index, char in enumerate(text):
        centre_x = slot * (index + 1) + rng.uniform(-slot * 0.12, slot * 0.12)
        centre_y = height / 2 + rng.uniform(-height * 0.08, height * 0.08)
        origin_x = centre_x - GLYPH_WIDTH * scale / 2
        origin_y = centre_y - glyph_height / 2
        angle = rng.uniform(-25, 25)
        path = _glyph_path(char, rng, origin_x=origin_x, origin_y=origin_y, scale=scale)
        parts.append(
            f'<path d="{path}" transform="rotate({_fmt(angle)} {_fmt(centre_x)} {_fmt(centre_y)})" '
            f'stroke="{rng.choice(INK_COLOURS)}" stroke-width="{_fmt(rng.uniform(2.5, 3.5))}" '
            'fill="none" stroke-linecap="round" stroke-linejoin="round"/>'
        )
    parts.append("</svg>")
    return "".join(parts)


__all__ = ["GLYPHS", "render_captcha_svg"]
