from __future__ import annotations

import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, TemplateError, TemplateNotFound, select_autoescape
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

IMAGE_WIDTH = 1200
IMAGE_HEIGHT = 630

THEMES: dict[str, dict[str, str]] = {
    "light": {"background": "#ffffff", "foreground": "#111827", "muted": "#4b5563", "accent": "#2563eb"},
    "dark": {"background": "#0f172a", "foreground": "#f8fafc", "muted": "#cbd5e1", "accent": "#38bdf8"},
    "blue": {"background": "#1e3a8a", "foreground": "#eff6ff", "muted": "#bfdbfe", "accent": "#fbbf24"},
    "green": {"background": "#064e3b", "foreground": "#ecfdf5", "muted": "#a7f3d0", "accent": "#f472b6"},
    "purple": {"background": "#4c1d95", "foreground": "#f5f3ff", "muted": "#ddd6fe", "accent": "#34d399"},
}

FONTS: dict[str, str] = {
    "inter": "Inter, Helvetica, Arial, sans-serif",
    "roboto": "Roboto, Helvetica, Arial, sans-serif",
    "playfair": "'Playfair Display', Georgia, serif",
    "opensans": "'Open Sans', Helvetica, Arial, sans-serif",
}

BUILTIN_TEMPLATES: tuple[str, ...] = (
    "default",
    "blog",
    "product",
    "event",
    "quote",
    "minimal",
    "news",
    "tech",
    "podcast",
    "portfolio",
    "course",
)


class TemplateRenderError(Exception):
    """Raised when an image template cannot be rendered."""


class RasterizationError(Exception):
    """Raised when the SVG-to-PNG conversion fails."""


@dataclass(frozen=True)
class RenderResult:
    body: bytes | str
    content_type: str
    format: str


def _wrap(text: str | None, width: int = 32, max_lines: int = 3) -> list[str]:
    if not text:
        return []
    lines = textwrap.wrap(text, width=width)
    if len(lines) > max_lines:
        lines = lines[:max_lines]
        lines[-1] = lines[-1].rstrip(".") + "..."
    return lines


class RenderService:
    def __init__(self, template_dir: Path) -> None:
        self.env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(["html", "xml", "svg"]),
        )
        self.env.filters["wrap"] = _wrap

    def render_svg(self, params: dict[str, Any]) -> str:
        template_name = f"{params.get('template') or 'default'}.svg"
        theme = THEMES.get(params.get("theme") or "light", THEMES["light"])
        font_family = FONTS.get(params.get("font") or "inter", FONTS["inter"])
        try:
            template = self.env.get_template(template_name)
            return template.render(
                **params,
                width=IMAGE_WIDTH,
                height=IMAGE_HEIGHT,
                colors=theme,
                font_family=font_family,
            )
        except TemplateNotFound as exc:
            raise TemplateRenderError(f"Template '{template_name}' was not found.") from exc
        except TemplateError as exc:
            raise TemplateRenderError(f"Template '{template_name}' failed to render.") from exc

    async def rasterize(self, svg: str) -> bytes:
        html = (
            "<!DOCTYPE html><html><head><style>html,body{margin:0;padding:0}</style></head>"
            f"<body>{svg}</body></html>"
        )
        try:
            async with async_playwright() as playwright:
                browser = await playwright.chromium.launch(
                    args=["--disable-dev-shm-usage", "--no-sandbox"]
                )
                page = await browser.new_page(
                    viewport={"width": IMAGE_WIDTH, "height": IMAGE_HEIGHT}
                )
                await page.set_content(html, wait_until="networkidle")
                png_bytes = await page.screenshot(type="png", full_page=False)
                await browser.close()
                return png_bytes
        except PlaywrightError as exc:
            raise RasterizationError("Failed to rasterize image with Playwright.") from exc

    async def render(self, params: dict[str, Any]) -> RenderResult:
        svg = self.render_svg(params)
        if params.get("format") == "svg":
            return RenderResult(body=svg, content_type="image/svg+xml", format="svg")
        return RenderResult(body=await self.rasterize(svg), content_type="image/png", format="png")
