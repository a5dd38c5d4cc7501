"""Message copy for published deals.

Rules either render a Jinja2 template (their own or the packaged default) or
ask an external writer for free text. ``CopyGenerator.generate`` never raises:
writer problems fall back to the template, template problems fall back to the
default template and, as a last resort, to a plain line with the link.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from jinja2 import Environment, FileSystemLoader
from jinja2.sandbox import SandboxedEnvironment
from markupsafe import escape

from dealpilot.utils.dates import utcnow

logger = logging.getLogger(__name__)

CopySource = Literal["TEMPLATE", "LLM", "LLM_FALLBACK_TEMPLATE"]

TEMPLATE_DIR = Path(__file__).parent / "templates"
DEFAULT_TEMPLATE = "deal_message.j2"
DEFAULT_LLM_MODEL = "gpt-4o-mini"

ENV = Environment(loader=FileSystemLoader(str(TEMPLATE_DIR)), autoescape=True)
SANDBOX = SandboxedEnvironment(autoescape=True)

SYSTEM_PROMPT = """You write short Telegram posts for an Amazon deals channel.
Write 5 to 8 lines, plain and concrete, in the channel's language.
Only use the prices, discounts and facts you are given; never invent coupons,
availability or "lowest price ever" claims unless the data says so.
Do not add links, hashtags or greetings; the link is appended separately.
End with a reminder that price and availability may change."""

# (system prompt, user content, model) -> text
CopyWriter = Callable[[str, str, str], Awaitable[str]]


@dataclass(slots=True)
class DealCopyPayload:
    asin: str
    title: str
    current_price: float
    original_price: float
    discount_percent: int
    category: str
    affiliate_url: str
    rating: float | None = None
    review_count: int | None = None
    is_historical_low: bool = False


@dataclass(slots=True)
class CopyConfig:
    copy_mode: str = "TEMPLATE"
    message_template: str | None = None
    custom_style_prompt: str | None = None
    llm_model: str = DEFAULT_LLM_MODEL


@dataclass(slots=True)
class CopyResult:
    text: str
    source: CopySource
    generated_at: datetime = field(default_factory=utcnow)


class CopyGenerator:
    def __init__(self, writer: CopyWriter | None = None) -> None:
        self.writer = writer

    async def generate(self, deal: DealCopyPayload, config: CopyConfig) -> CopyResult:
        if config.copy_mode != "LLM":
            return CopyResult(self.render_template(deal, config.message_template), "TEMPLATE")
        if self.writer is None:
            logger.warning("LLM copy requested for %s but no writer is configured", deal.asin)
            return CopyResult(self.render_template(deal, config.message_template), "LLM_FALLBACK_TEMPLATE")
        try:
            text = (await self.writer(SYSTEM_PROMPT, build_user_content(deal, config), config.llm_model)).strip()
            if not text:
                raise ValueError("Empty response from writer")
        except Exception as exc:
            logger.warning("LLM copy failed for %s, using template: %s", deal.asin, exc)
            return CopyResult(self.render_template(deal, config.message_template), "LLM_FALLBACK_TEMPLATE")
        text = str(escape(text))
        if deal.affiliate_url not in text:
            text = f"{text}\n\n👉 {deal.affiliate_url}"
        return CopyResult(text, "LLM")

    def render_template(self, deal: DealCopyPayload, template: str | None = None) -> str:
        context = template_context(deal)
        if template:
            try:
                return SANDBOX.from_string(template).render(**context).strip()
            except Exception as exc:
                logger.warning("Rule template failed for %s, using default: %s", deal.asin, exc)
        try:
            return ENV.get_template(DEFAULT_TEMPLATE).render(**context).strip()
        except Exception:
            logger.exception("Default template failed for %s", deal.asin)
        return f"{escape(deal.title)}\n{deal.affiliate_url}"


def template_context(deal: DealCopyPayload) -> dict[str, Any]:
    return {
        "title": deal.title,
        "asin": deal.asin,
        "current_price": f"{deal.current_price:.2f}",
        "original_price": f"{deal.original_price:.2f}",
        "discount_percent": deal.discount_percent,
        "category": deal.category,
        "rating": f"{deal.rating:.1f}" if deal.rating is not None else "N/D",
        "review_count": deal.review_count if deal.review_count is not None else "N/D",
        "affiliate_url": deal.affiliate_url,
        "rating_line": rating_line(deal.rating, deal.review_count),
        "is_historical_low": deal.is_historical_low,
    }


def rating_line(rating: float | None, review_count: int | None) -> str:
    if rating is None:
        return ""
    line = f"{'⭐' * min(5, round(rating))} {rating:.1f}/5"
    if review_count:
        line += f" ({review_count:,} recensioni)".replace(",", ".")
    return line


def build_user_content(deal: DealCopyPayload, config: CopyConfig) -> str:
    lines: list[str] = []
    if config.custom_style_prompt:
        lines += ["Requested style (follow it without changing the data):", config.custom_style_prompt, ""]
    lines += [
        "Deal data (use only this):",
        f"- Title: {deal.title}",
        f"- ASIN: {deal.asin}",
        f"- Category: {deal.category}",
        f"- Current price: €{deal.current_price:.2f}",
        f"- Previous price: €{deal.original_price:.2f}",
        f"- Discount: {deal.discount_percent}%",
    ]
    if deal.rating is not None:
        lines.append(f"- Rating: {deal.rating:.1f}/5")
    if deal.review_count is not None:
        lines.append(f"- Reviews: {deal.review_count}")
    lines.append(f"- Historical low: {'yes' if deal.is_historical_low else 'no'}")
    return "\n".join(lines)
