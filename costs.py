"""Cost tracking for icon generation runs.

Pricing tables are approximate and updated periodically.
Vision costs are exact (calculated from the response's token usage).
Image costs are flat per-image rates by model, size and quality.

Outputs:
  logs/costs.log          — human-readable append-only log
  logs/costs_totals.json  — machine-readable running totals
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List

log = logging.getLogger(__name__)

LOGS_DIR = Path(os.environ.get("ICON_LOG_DIR") or Path(__file__).parent / "logs")
COST_LOG = LOGS_DIR / "costs.log"
TOTALS_FILE = LOGS_DIR / "costs_totals.json"

# ── Pricing tables ────────────────────────────────────────────────────────────
# Vision chat models: (input $/1M tokens, output $/1M tokens)
_VISION_PRICING: Dict[str, tuple] = {
    "gpt-4-turbo":  (10.00, 30.00),
    "gpt-4o-mini":  (0.15,  0.60),
    "gpt-4o":       (2.50, 10.00),
    "gpt-4.1-mini": (0.40,  1.60),
    "gpt-4.1":      (2.00,  8.00),
}
_VISION_DEFAULT = (10.00, 30.00)

# Image models: (model, size, quality) -> $/image
_IMAGE_PRICING: Dict[tuple, float] = {
    ("dall-e-3", "1024x1024", "standard"): 0.040,
    ("dall-e-3", "1024x1024", "hd"):       0.080,
    ("dall-e-3", "1024x1792", "standard"): 0.080,
    ("dall-e-3", "1792x1024", "standard"): 0.080,
    ("dall-e-3", "1024x1792", "hd"):       0.120,
    ("dall-e-3", "1792x1024", "hd"):       0.120,
    ("dall-e-2", "1024x1024", "standard"): 0.020,
    ("dall-e-2", "512x512",   "standard"): 0.018,
    ("dall-e-2", "256x256",   "standard"): 0.016,
}
_IMAGE_DEFAULT = 0.040


def _vision_rate(model: str) -> tuple:
    """Return (input_rate, output_rate) per 1M tokens.  Longest prefix wins."""
    for prefix in sorted(_VISION_PRICING, key=len, reverse=True):
        if model.startswith(prefix):
            return _VISION_PRICING[prefix]
    log.debug("No vision pricing match for '%s', using default", model)
    return _VISION_DEFAULT


def _image_rate(model: str, size: str, quality: str) -> float:
    rate = _IMAGE_PRICING.get((model, size, quality))
    if rate is None:
        log.debug("No image pricing match for %s/%s/%s, using default", model, size, quality)
        return _IMAGE_DEFAULT
    return rate


# ── CostTracker ───────────────────────────────────────────────────────────────

class CostTracker:
    """Accumulates cost records for a single pipeline run."""

    def __init__(self) -> None:
        self.items: List[Dict] = []

    def record_llm(self, stage: str, model: str, input_tokens: int, output_tokens: int) -> float:
        """Record the vision call and return its cost in USD."""
        in_rate, out_rate = _vision_rate(model)
        cost = (input_tokens * in_rate + output_tokens * out_rate) / 1_000_000
        self.items.append(
            {
                "type": "llm",
                "stage": stage,
                "model": model,
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cost": cost,
                "estimated": False,
            }
        )
        log.debug(
            "Vision cost [%s] %s  %d in / %d out tokens  $%.6f",
            stage, model, input_tokens, output_tokens, cost,
        )
        return cost

    def record_image(self, stage: str, model: str, size: str, quality: str) -> float:
        """Record one generated image and return its estimated cost in USD."""
        cost = _image_rate(model, size, quality)
        self.items.append(
            {
                "type": "image",
                "stage": stage,
                "model": model,
                "size": size,
                "quality": quality,
                "cost": cost,
                "estimated": True,
            }
        )
        log.debug("Image cost [%s] %s %s/%s  ~$%.6f", stage, model, size, quality, cost)
        return cost

    def summary(self) -> Dict:
        vision_cost = sum(i["cost"] for i in self.items if i["type"] == "llm")
        image_cost = sum(i["cost"] for i in self.items if i["type"] == "image")
        return {
            "items":         self.items,
            "vision_cost":   vision_cost,
            "image_cost":    image_cost,
            "image_count":   sum(1 for i in self.items if i["type"] == "image"),
            "total":         vision_cost + image_cost,
            "has_estimates": any(i.get("estimated") for i in self.items),
        }


# ── Totals persistence ────────────────────────────────────────────────────────

def _empty_totals() -> Dict:
    return {
        "run_count":    0,
        "vision_total": 0.0,
        "image_total":  0.0,
        "image_count":  0,
        "grand_total":  0.0,
    }


def _load_totals() -> Dict:
    if TOTALS_FILE.exists():
        try:
            return {**_empty_totals(), **json.loads(TOTALS_FILE.read_text())}
        except (OSError, json.JSONDecodeError) as exc:
            log.warning("Unreadable cost totals file, starting fresh: %s", exc)
    return _empty_totals()


def _save_totals(totals: Dict) -> None:
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    TOTALS_FILE.write_text(json.dumps(totals, indent=2))


def get_totals() -> Dict:
    """Return current running totals."""
    return _load_totals()


# ── Log writer ────────────────────────────────────────────────────────────────

_W = 72
_DIV = "─" * _W
_HDIV = "═" * _W


def append_cost_log(run_id: str, theme: str, duration: float, tracker: CostTracker) -> None:
    """Append a formatted cost record to costs.log and update running totals."""
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    summary = tracker.summary()
    now = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    est = "~" if summary["has_estimates"] else " "

    lines: List[str] = [
        _HDIV,
        f"  Run {run_id:<10}  theme={theme!r}   {now}   {duration:.1f}s",
        _DIV,
    ]
    for item in summary["items"]:
        if item["type"] == "llm":
            detail = f"{item['input_tokens']:,}↑ / {item['output_tokens']:,}↓"
            cost_str = f"${item['cost']:.6f}"
        else:
            detail = f"{item['size']} {item['quality']}"
            cost_str = f"~${item['cost']:.6f}"
        lines.append(f"  {item['stage']:<10} {item['model']:<16} {detail:<24} {cost_str:>12}")
    lines.append(_DIV)
    lines.append(f"  {'Vision:':<40} ${summary['vision_cost']:>12.6f}")
    lines.append(f"  {'Images (' + str(summary['image_count']) + ', estimated):':<40}~${summary['image_cost']:>12.6f}")
    lines.append(f"  {'Run Total:':<40}{est}${summary['total']:>12.6f}")
    lines.append("")

    with open(COST_LOG, "a", encoding="utf-8") as fh:
        fh.write("\n".join(lines) + "\n")

    totals = _load_totals()
    totals["run_count"] += 1
    totals["vision_total"] += summary["vision_cost"]
    totals["image_total"] += summary["image_cost"]
    totals["image_count"] += summary["image_count"]
    totals["grand_total"] += summary["total"]
    _save_totals(totals)

    log.info(
        "Cost logged: run=%s  total=%s$%.4f  (vision=$%.4f  images=~$%.4f)",
        run_id, est, summary["total"], summary["vision_cost"], summary["image_cost"],
    )
