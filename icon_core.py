"""Core icon pipeline: read app names off home-screen screenshots, then draw a
themed icon for each one.  Used by both the web app and the CLI.

Two stages run strictly in sequence:

  1. LabelExtractor   one batched vision call for all screenshots, retried with
                      bounded exponential backoff on 429.
  2. IconGenerator    one image-generation call per label, never more than one
                      in flight, paced so consecutive sends are at least
                      ``min_interval`` seconds apart.

IconPipeline drives both, reports progress through ``progress_cb`` and keeps
every icon that finished even when a later label fails.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import image_prep
from icon_errors import (
    ApiError,
    IconServiceError,
    ImageDownloadError,
    RateLimitExceeded,
    RunCancelled,
    UnknownError,
)
from icon_http import DEFAULT_BASE_URL, DEFAULT_TIMEOUT, ApiClient

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Models, prompts and pacing
# ---------------------------------------------------------------------------

DEFAULT_VISION_MODEL = "gpt-4-turbo"
DEFAULT_IMAGE_MODEL = "dall-e-3"
DEFAULT_IMAGE_SIZE = "1024x1024"
DEFAULT_IMAGE_QUALITY = "standard"

# 5 image requests per minute on the lowest API tier
REQUESTS_PER_MINUTE = 5
MIN_REQUEST_INTERVAL = 60.0 / REQUESTS_PER_MINUTE
RATE_LIMIT_PAUSE = 12.0

EXTRACT_MAX_ATTEMPTS = 5
EXTRACT_BASE_DELAY = 2.0

EXTRACT_SYSTEM_PROMPT = "You are an AI assistant that extracts app names from iPhone home screen images."
EXTRACT_USER_PROMPT = (
    "Please list the names of all the apps you can see in these iPhone home screen images. "
    "Only list the app names, separated by commas."
)
ICON_PROMPT_TEMPLATE = "Create an app icon for '{label}' in a {theme} style"

DEFAULT_SETTINGS: Dict[str, Any] = {
    "vision_model": DEFAULT_VISION_MODEL,
    "vision_max_tokens": 300,
    "image_model": DEFAULT_IMAGE_MODEL,
    "image_size": DEFAULT_IMAGE_SIZE,
    "image_quality": DEFAULT_IMAGE_QUALITY,
    "min_interval": MIN_REQUEST_INTERVAL,
    "rate_limit_pause": RATE_LIMIT_PAUSE,
    "max_rate_limit_retries": None,
    "extract_max_attempts": EXTRACT_MAX_ATTEMPTS,
    "extract_base_delay": EXTRACT_BASE_DELAY,
    "drop_empty_labels": False,
    "request_timeout": DEFAULT_TIMEOUT,
    "base_url": DEFAULT_BASE_URL,
}

# Fallback catalogues when the models endpoint cannot be reached
VISION_MODELS: List[Dict] = [
    {"id": "gpt-4-turbo", "name": "GPT-4 Turbo ★ Default", "default": True},
    {"id": "gpt-4o", "name": "GPT-4o"},
    {"id": "gpt-4o-mini", "name": "GPT-4o Mini (cheapest)"},
    {"id": "gpt-4.1", "name": "GPT-4.1"},
]

IMAGE_MODELS: List[Dict] = [
    {"id": "dall-e-3", "name": "DALL·E 3 ★ Default", "sizes": ["1024x1024", "1024x1792", "1792x1024"], "default": True},
    {"id": "dall-e-2", "name": "DALL·E 2 (cheaper, lower quality)", "sizes": ["256x256", "512x512", "1024x1024"]},
]


def fetch_models(client: ApiClient) -> Dict[str, List[Dict]]:
    """Return vision-capable chat models and image models visible to the key."""
    try:
        body = client.send("GET", "models")
    except IconServiceError as exc:
        log.warning("Model listing failed, using built-in catalogue: %s", exc)
        return {"vision": list(VISION_MODELS), "image": list(IMAGE_MODELS)}

    ids = sorted(m.get("id", "") for m in body.get("data", []) if isinstance(m, dict))
    vision = [
        {"id": mid, "name": mid, "default": mid == DEFAULT_VISION_MODEL}
        for mid in ids
        if mid.startswith(("gpt-4o", "gpt-4.1", "gpt-4-turbo"))
        and not any(x in mid for x in ("audio", "realtime", "transcribe", "search", "tts"))
    ]
    image = [
        {"id": mid, "name": mid, "default": mid == DEFAULT_IMAGE_MODEL}
        for mid in ids
        if mid.startswith(("dall-e", "gpt-image"))
    ]
    return {"vision": vision or list(VISION_MODELS), "image": image or list(IMAGE_MODELS)}


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SourceImage:
    """A screenshot supplied by the caller.  Never modified by the pipeline."""

    data: bytes
    format: Optional[str] = None

    @classmethod
    def from_path(cls, path: Path) -> "SourceImage":
        path = Path(path)
        return cls(path.read_bytes(), path.suffix.lstrip(".").lower() or None)


@dataclass(frozen=True)
class GeneratedArtifact:
    run_id: str
    index: int
    label: str
    data: bytes
    format: str
    url: str = ""

    @property
    def extension(self) -> str:
        return image_prep.extension_for(self.format)


@dataclass
class PipelineRun:
    """Mutable state of one generation run.

    ``labels`` is frozen into a tuple at creation.  ``artifacts`` is keyed by
    label position so duplicate labels each keep their own icon.
    """

    run_id: str
    labels: Tuple[str, ...]
    theme: str
    cursor: int = 0
    last_request_at: Optional[float] = None
    artifacts: Dict[int, GeneratedArtifact] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.labels = tuple(self.labels)
        if not isinstance(self.theme, str) or not self.theme.strip():
            raise ValueError("theme must be a non-empty string")

    @property
    def is_complete(self) -> bool:
        return self.cursor >= len(self.labels)

    @property
    def current_label(self) -> Optional[str]:
        return None if self.is_complete else self.labels[self.cursor]

    def results(self) -> List[Tuple[str, GeneratedArtifact]]:
        return [(self.labels[i], self.artifacts[i]) for i in sorted(self.artifacts)]

    def icon_map(self) -> Dict[str, GeneratedArtifact]:
        """label -> artifact; the first position wins for duplicate labels."""
        out: Dict[str, GeneratedArtifact] = {}
        for label, artifact in self.results():
            out.setdefault(label, artifact)
        return out

    def reset(self) -> None:
        self.cursor = 0
        self.last_request_at = None
        self.artifacts.clear()


@dataclass
class PipelineResult:
    run_id: str
    status: str  # complete | failed | cancelled
    labels: List[str]
    icons: List[Tuple[str, GeneratedArtifact]]
    error: Optional[IconServiceError] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "complete"

    @property
    def icon_map(self) -> Dict[str, GeneratedArtifact]:
        out: Dict[str, GeneratedArtifact] = {}
        for label, artifact in self.icons:
            out.setdefault(label, artifact)
        return out


def parse_labels(content: str, drop_empty: bool = False) -> List[str]:
    """Split the model's comma-separated answer into trimmed labels."""
    labels = [part.strip() for part in content.split(",")]
    if drop_empty:
        labels = [label for label in labels if label]
    return labels


# ---------------------------------------------------------------------------
# Stage 1: label extraction
# ---------------------------------------------------------------------------

class LabelExtractor:
    """Sends every screenshot in a single chat completion and parses the answer."""

    def __init__(
        self,
        client: ApiClient,
        *,
        model: str = DEFAULT_VISION_MODEL,
        max_tokens: int = 300,
        max_attempts: int = EXTRACT_MAX_ATTEMPTS,
        base_delay: float = EXTRACT_BASE_DELAY,
        drop_empty: bool = False,
        sleep: Callable[[float], Any] = time.sleep,
        on_retry: Optional[Callable[[int, float, RateLimitExceeded], None]] = None,
        cost_tracker: Optional[Any] = None,   # costs.CostTracker
    ) -> None:
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.drop_empty = drop_empty
        self._sleep = sleep
        self._on_retry = on_retry
        self.cost_tracker = cost_tracker

    def build_payload(self, images: Sequence[SourceImage]) -> Dict:
        content: List[Dict] = [{"type": "text", "text": EXTRACT_USER_PROMPT}]
        for n, image in enumerate(images, start=1):
            try:
                jpeg = image_prep.prepare_for_upload(image.data)
            except ValueError as exc:
                raise UnknownError(f"Could not prepare image {n} for upload: {exc}") from exc
            content.append({"type": "image_url", "image_url": {"url": image_prep.to_data_url(jpeg)}})
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": EXTRACT_SYSTEM_PROMPT},
                {"role": "user", "content": content},
            ],
            "max_tokens": self.max_tokens,
        }

    def extract_labels(self, images: Sequence[SourceImage]) -> List[str]:
        if not images:
            raise ValueError("at least one source image is required")

        payload = self.build_payload(images)
        t0 = time.time()
        body = self.client.send_with_backoff(
            "POST",
            "chat/completions",
            payload,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            sleep=self._sleep,
            on_retry=self._on_retry,
        )

        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise ApiError("Unexpected response structure")
        if not isinstance(content, str):
            raise ApiError("Unexpected response structure")

        usage = body.get("usage") or {}
        if self.cost_tracker:
            self.cost_tracker.record_llm(
                "extract",
                self.model,
                int(usage.get("prompt_tokens", 0)),
                int(usage.get("completion_tokens", 0)),
            )

        labels = parse_labels(content, drop_empty=self.drop_empty)
        log.info(
            "Extraction: model=%s  %d image(s) -> %d label(s)  %.1fs",
            self.model, len(images), len(labels), time.time() - t0,
        )
        return labels


# ---------------------------------------------------------------------------
# Stage 2: rate-limited icon generation
# ---------------------------------------------------------------------------

class IconGenerator:
    """Generates the icon for ``run.current_label``, one call at a time.

    Pacing state lives on the PipelineRun, so separate runs never share it.
    A 429 is raised as RateLimitExceeded without retrying; the orchestrator
    decides when to call again for the same label.
    """

    def __init__(
        self,
        client: ApiClient,
        *,
        model: str = DEFAULT_IMAGE_MODEL,
        size: str = DEFAULT_IMAGE_SIZE,
        quality: str = DEFAULT_IMAGE_QUALITY,
        min_interval: float = MIN_REQUEST_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = time.sleep,
        cost_tracker: Optional[Any] = None,   # costs.CostTracker
    ) -> None:
        self.client = client
        self.model = model
        self.size = size
        self.quality = quality
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self.cost_tracker = cost_tracker

    @staticmethod
    def build_prompt(label: str, theme: str) -> str:
        return ICON_PROMPT_TEMPLATE.format(label=label, theme=theme)

    def pacing_delay(self, run: PipelineRun) -> float:
        if run.last_request_at is None:
            return 0.0
        elapsed = self._clock() - run.last_request_at
        return max(0.0, self.min_interval - elapsed)

    def generate_next(self, run: PipelineRun) -> Tuple[str, GeneratedArtifact]:
        if run.is_complete:
            raise IndexError("run has no labels left to generate")

        index = run.cursor
        label = run.labels[index]

        existing = run.artifacts.get(index)
        if existing is not None:
            run.cursor += 1
            return label, existing

        delay = self.pacing_delay(run)
        if delay > 0:
            log.debug("Pacing %.1fs before icon %d (%r)", delay, index + 1, label)
            self._sleep(delay)

        payload = {
            "model": self.model,
            "prompt": self.build_prompt(label, run.theme),
            "n": 1,
            "size": self.size,
            "quality": self.quality,
        }
        run.last_request_at = self._clock()
        t0 = time.time()
        body = self.client.send("POST", "images/generations", payload)

        url = _first_image_url(body)
        data = self.client.download(url)
        fmt = image_prep.detect_image_format(data)
        if fmt is None:
            raise ImageDownloadError(f"Downloaded data for {label!r} is not an image")

        artifact = GeneratedArtifact(run.run_id, index, label, data, fmt, url)
        run.artifacts[index] = artifact
        run.cursor += 1

        if self.cost_tracker:
            self.cost_tracker.record_image("generate", self.model, self.size, self.quality)
        log.info(
            "Icon %d/%d: %r  model=%s  %d bytes %s  %.1fs",
            index + 1, len(run.labels), label, self.model, len(data), fmt, time.time() - t0,
        )
        return label, artifact


def _first_image_url(body: Dict) -> str:
    try:
        url = body["data"][0]["url"]
    except (KeyError, IndexError, TypeError):
        raise ApiError("Unexpected response structure")
    if not isinstance(url, str) or not url:
        raise ApiError("Unexpected response structure")
    return url


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class IconPipeline:
    """Runs extraction then generation with real-time progress callbacks."""

    def __init__(
        self,
        run_id: str,
        api_key: Optional[str] = None,
        settings: Optional[Dict] = None,
        progress_cb: Optional[Callable[[Dict], None]] = None,
        cost_tracker: Optional[Any] = None,   # costs.CostTracker
        client: Optional[ApiClient] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Any]] = None,
    ) -> None:
        self.run_id = run_id
        self.settings: Dict[str, Any] = {**DEFAULT_SETTINGS, **(settings or {})}
        self.progress_cb = progress_cb or (lambda event: None)
        self.cost_tracker = cost_tracker

        if client is None:
            if not api_key:
                raise ValueError("api_key or client is required")
            client = ApiClient(
                api_key,
                base_url=self.settings["base_url"],
                timeout=self.settings["request_timeout"],
            )
        self.client = client

        self._cancel_event = threading.Event()
        self._sleep = sleep or self._cancel_event.wait
        self._clock = clock
        self.current_run: Optional[PipelineRun] = None

        s = self.settings
        self.extractor = LabelExtractor(
            client,
            model=s["vision_model"],
            max_tokens=s["vision_max_tokens"],
            max_attempts=s["extract_max_attempts"],
            base_delay=s["extract_base_delay"],
            drop_empty=s["drop_empty_labels"],
            sleep=self._wait,
            on_retry=self._on_extract_retry,
            cost_tracker=cost_tracker,
        )
        self.generator = IconGenerator(
            client,
            model=s["image_model"],
            size=s["image_size"],
            quality=s["image_quality"],
            min_interval=s["min_interval"],
            clock=clock,
            sleep=self._wait,
            cost_tracker=cost_tracker,
        )

        log.info(
            "Pipeline init: run=%s vision=%s image=%s interval=%.1fs",
            run_id, s["vision_model"], s["image_model"], s["min_interval"],
        )

    # ------------------------------------------------------------------
    # Event helpers
    # ------------------------------------------------------------------

    def _emit(
        self,
        stage: str,
        status: str,
        message: str,
        data: Optional[Dict] = None,
    ) -> None:
        event: Dict[str, Any] = {
            "stage": stage,
            "status": status,
            "message": message,
            "ts": time.time(),
        }
        if data:
            event["data"] = data
        self.progress_cb(event)
        lvl = logging.WARNING if status == "failed" else logging.DEBUG
        log.log(lvl, "[%s] %s — %s", self.run_id, stage, message)

    def _on_extract_retry(self, attempt: int, delay: float, exc: RateLimitExceeded) -> None:
        self._emit(
            "extract",
            "retrying",
            f"Rate limited. Retrying in {delay:.0f} seconds.",
            {"attempt": attempt, "delay": delay},
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Abandon the run.  Any pending pause returns immediately."""
        log.info("Cancel requested: run=%s", self.run_id)
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise RunCancelled(self.run_id)

    def _wait(self, seconds: float) -> None:
        self._check_cancelled()
        if seconds > 0:
            self._sleep(seconds)
        self._check_cancelled()

    def start_over(self) -> None:
        """Drop the current run so the next call starts from scratch."""
        self.current_run = None
        self._cancel_event.clear()

    # ------------------------------------------------------------------
    # Stage entry points
    # ------------------------------------------------------------------

    def extract_labels(self, images: Sequence[SourceImage]) -> List[str]:
        if not images:
            raise ValueError("at least one source image is required")
        self._check_cancelled()
        self._emit(
            "extract",
            "started",
            f"Extracting app names from {len(images)} image(s) via {self.extractor.model}…",
        )
        try:
            labels = self.extractor.extract_labels(images)
        except IconServiceError as exc:
            self._emit("extract", "failed", exc.user_message(), {"error_kind": exc.kind})
            raise
        self._emit("extract", "completed", f"Found {len(labels)} app name(s)", {"labels": labels})
        return labels

    def generate_icons(self, labels: Sequence[str], theme: str) -> PipelineResult:
        """Generate one icon per label.  Never raises taxonomy errors."""
        self.current_run = PipelineRun(self.run_id, tuple(labels), theme)
        return self.resume()

    def resume(self) -> PipelineResult:
        """Continue ``current_run`` from its cursor; finished icons are kept."""
        run = self.current_run
        if run is None:
            raise RuntimeError("no run to resume")
        start = time.time()
        try:
            self._drive(run)
        except RunCancelled:
            return self._finish(run, list(run.labels), "cancelled", None, start)
        except IconServiceError as exc:
            return self._finish(run, list(run.labels), "failed", exc, start)
        return self._finish(run, list(run.labels), "complete", None, start)

    def run(self, images: Sequence[SourceImage], theme: str) -> PipelineResult:
        """Extract labels from ``images`` then generate an icon for each."""
        if not isinstance(theme, str) or not theme.strip():
            raise ValueError("theme must be a non-empty string")
        log.info("Pipeline start: run=%s  %d image(s)  theme=%r", self.run_id, len(images), theme)
        start = time.time()
        try:
            labels = self.extract_labels(images)
        except RunCancelled:
            return self._finish(None, [], "cancelled", None, start)
        except IconServiceError as exc:
            return self._finish(None, [], "failed", exc, start)
        return self.generate_icons(labels, theme)

    # ------------------------------------------------------------------
    # Sequential drive loop
    # ------------------------------------------------------------------

    def _drive(self, run: PipelineRun) -> None:
        cap = self.settings["max_rate_limit_retries"]
        pause = self.settings["rate_limit_pause"]
        total = len(run.labels)
        rate_limit_hits = 0

        while not run.is_complete:
            self._check_cancelled()
            index = run.cursor
            label = run.current_label
            if index not in run.artifacts:
                self._emit(
                    "generate",
                    "started",
                    f"Generating icon {index + 1}/{total}: {label}",
                    {"label": label, "index": index},
                )
            try:
                label, artifact = self.generator.generate_next(run)
            except RateLimitExceeded as exc:
                rate_limit_hits += 1
                if cap is not None and rate_limit_hits > cap:
                    self._emit("generate", "failed", exc.user_message(), {"label": label, "index": index})
                    raise
                self._emit(
                    "generate",
                    "rate_limited",
                    f"Rate limited on {label!r}. Retrying in {pause:.0f} seconds.",
                    {"label": label, "index": index, "attempt": rate_limit_hits},
                )
                self._wait(pause)
                continue
            except IconServiceError as exc:
                self._emit(
                    "generate",
                    "failed",
                    exc.user_message(),
                    {"label": label, "index": index, "error_kind": exc.kind},
                )
                raise

            rate_limit_hits = 0
            self._emit(
                "generate",
                "completed",
                f"Icon {index + 1}/{total} ready: {label}",
                {"label": label, "index": index, "artifact": artifact},
            )

    def _finish(
        self,
        run: Optional[PipelineRun],
        labels: List[str],
        status: str,
        error: Optional[IconServiceError],
        start: float,
    ) -> PipelineResult:
        icons = run.results() if run else []
        result = PipelineResult(
            run_id=self.run_id,
            status=status,
            labels=labels,
            icons=icons,
            error=error,
            duration=time.time() - start,
        )
        data: Dict[str, Any] = {"icons": result.icon_map, "results": icons, "labels": labels}
        if status == "complete":
            log.info(
                "Pipeline complete: run=%s  %.1fs  %d icon(s)",
                self.run_id, result.duration, len(icons),
            )
            self._emit(
                "pipeline",
                "complete",
                f"Generated {len(icons)} icon(s) in {result.duration:.0f}s",
                data,
            )
        elif status == "cancelled":
            self._emit("pipeline", "cancelled", f"Run cancelled after {len(icons)} icon(s)", data)
        else:
            data["error_kind"] = error.kind if error else "unknown"
            self._emit("pipeline", "failed", error.user_message() if error else "Run failed", data)
        return result


# ---------------------------------------------------------------------------
# Result storage
# ---------------------------------------------------------------------------

def _slug(label: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9]+", "_", label).strip("_").lower()
    return slug or "icon"


def icon_filename(artifact: GeneratedArtifact) -> str:
    return f"{artifact.index + 1:02d}_{_slug(artifact.label)}.{artifact.extension}"


def save_icons(icons: Sequence[Tuple[str, GeneratedArtifact]], directory: Path) -> List[Path]:
    """Write each icon to ``directory`` and return the paths in label order."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    paths: List[Path] = []
    for _, artifact in icons:
        path = directory / icon_filename(artifact)
        path.write_bytes(artifact.data)
        paths.append(path)
    log.info("Saved %d icon(s) to %s", len(paths), directory)
    return paths
