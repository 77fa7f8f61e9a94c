from __future__ import annotations

import pytest

from icon_core import MIN_REQUEST_INTERVAL, GeneratedArtifact, IconGenerator, PipelineRun
from icon_errors import ApiError, ImageDownloadError, RateLimitExceeded
from icon_http import ApiClient

from fakes import FakeResponse, FakeSession, image_response, png_bytes, rate_limited


def _queue_icon(session: FakeSession, url: str, data: bytes) -> None:
    session.responses.append(image_response(url))
    session.downloads.append(FakeResponse(200, content=data))


@pytest.fixture()
def generator(client, clock) -> IconGenerator:
    return IconGenerator(client, clock=clock, sleep=clock.sleep)


def test_minimum_interval_is_twelve_seconds() -> None:
    assert MIN_REQUEST_INTERVAL == 12.0


def test_two_labels_are_paced_and_yield_distinct_icons(generator, session) -> None:
    run = PipelineRun("r1", ("Mail", "Safari"), "neon cyberpunk")
    _queue_icon(session, "https://blob/1.png", png_bytes(color=(255, 0, 0)))
    _queue_icon(session, "https://blob/2.png", png_bytes(color=(0, 255, 0)))

    first = generator.generate_next(run)
    second = generator.generate_next(run)

    assert [first[0], second[0]] == ["Mail", "Safari"]
    posts = session.posts_to("images/generations")
    assert len(posts) == 2
    assert posts[1]["at"] - posts[0]["at"] >= 12.0
    assert posts[0]["body"]["prompt"] == "Create an app icon for 'Mail' in a neon cyberpunk style"
    assert posts[0]["body"]["size"] == "1024x1024"
    assert posts[0]["body"]["quality"] == "standard"
    assert posts[0]["body"]["n"] == 1
    assert run.is_complete
    icons = run.icon_map()
    assert icons["Mail"].data != icons["Safari"].data
    assert icons["Mail"].format == "PNG"


def test_first_request_is_not_delayed(generator, session, clock) -> None:
    run = PipelineRun("r1", ("Mail",), "retro")
    _queue_icon(session, "https://blob/1.png", png_bytes())

    generator.generate_next(run)

    assert clock.sleeps == []


def test_pacing_counts_from_send_time_under_slow_responses(clock) -> None:
    slow = FakeSession(clock, latency=5.0)
    generator = IconGenerator(ApiClient("sk-test", session=slow), clock=clock, sleep=clock.sleep)
    run = PipelineRun("r1", ("Mail", "Safari", "Notes"), "retro")
    for n in range(3):
        _queue_icon(slow, f"https://blob/{n}.png", png_bytes())

    for _ in range(3):
        generator.generate_next(run)

    sent = [c["at"] for c in slow.calls]
    assert [b - a for a, b in zip(sent, sent[1:])] == [12.0, 12.0]
    # 5s POST + 5s download already elapsed each time
    assert clock.sleeps == [2.0, 2.0]


def test_pacing_state_is_per_run(generator, session, clock) -> None:
    a = PipelineRun("a", ("Mail",), "retro")
    b = PipelineRun("b", ("Notes",), "retro")
    _queue_icon(session, "https://blob/a.png", png_bytes())
    _queue_icon(session, "https://blob/b.png", png_bytes())

    generator.generate_next(a)
    generator.generate_next(b)

    assert clock.sleeps == []


def test_existing_artifact_is_not_regenerated(generator, session) -> None:
    run = PipelineRun("r1", ("Mail",), "retro")
    stored = GeneratedArtifact("r1", 0, "Mail", png_bytes(), "PNG", "https://blob/old.png")
    run.artifacts[0] = stored

    label, artifact = generator.generate_next(run)

    assert (label, artifact) == ("Mail", stored)
    assert session.calls == []
    assert run.is_complete


def test_duplicate_labels_get_one_icon_each(generator, session) -> None:
    run = PipelineRun("r1", ("Mail", "Mail"), "retro")
    _queue_icon(session, "https://blob/1.png", png_bytes(color=(1, 1, 1)))
    _queue_icon(session, "https://blob/2.png", png_bytes(color=(2, 2, 2)))

    generator.generate_next(run)
    generator.generate_next(run)

    assert len(run.results()) == 2
    assert len(session.posts_to("images/generations")) == 2


def test_non_image_download_fails_and_keeps_earlier_icons(generator, session) -> None:
    run = PipelineRun("r1", ("Mail", "Safari"), "retro")
    _queue_icon(session, "https://blob/1.png", png_bytes())
    _queue_icon(session, "https://blob/2.png", b"<Error>BlobNotFound</Error>")

    generator.generate_next(run)
    with pytest.raises(ImageDownloadError):
        generator.generate_next(run)

    assert run.cursor == 1
    assert [label for label, _ in run.results()] == ["Mail"]


def test_rate_limit_is_signalled_without_advancing(generator, session, clock) -> None:
    run = PipelineRun("r1", ("Mail",), "retro")
    session.responses.append(rate_limited())

    with pytest.raises(RateLimitExceeded):
        generator.generate_next(run)

    assert run.cursor == 0
    assert run.last_request_at == clock.now
    assert len(session.calls) == 1


def test_missing_url_is_api_error(generator, session) -> None:
    run = PipelineRun("r1", ("Mail",), "retro")
    session.responses.append(FakeResponse(200, {"data": []}))

    with pytest.raises(ApiError, match="Unexpected response structure"):
        generator.generate_next(run)


def test_completed_run_has_nothing_left(generator) -> None:
    run = PipelineRun("r1", (), "retro")
    with pytest.raises(IndexError):
        generator.generate_next(run)


class TestPipelineRun:
    def test_labels_are_frozen(self) -> None:
        run = PipelineRun("r1", ["Mail", "Safari"], "retro")
        assert run.labels == ("Mail", "Safari")
        assert not hasattr(run.labels, "append")

    @pytest.mark.parametrize("theme", ["", "   "])
    def test_theme_must_not_be_blank(self, theme: str) -> None:
        with pytest.raises(ValueError):
            PipelineRun("r1", ("Mail",), theme)

    def test_reset_clears_progress(self) -> None:
        run = PipelineRun("r1", ("Mail",), "retro", cursor=1, last_request_at=5.0)
        run.artifacts[0] = GeneratedArtifact("r1", 0, "Mail", b"x", "PNG")

        run.reset()

        assert (run.cursor, run.last_request_at, run.artifacts) == (0, None, {})
