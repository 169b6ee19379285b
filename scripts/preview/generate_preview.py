#!/usr/bin/env python3
"""Capture a running site with Playwright and encode it as a looping preview GIF.

Three capture modes share one pipeline:

  sections  record video while walking page sections, waiting for reveal and
            typing animations to finish
  scroll    record video while smooth-scrolling the page over a fixed duration
  frames    screenshot the viewport at evenly spaced scroll offsets

The capture is encoded with ffmpeg in two passes (palettegen, then paletteuse).
Only the final GIF survives the run; frames, raw video and palette are removed
even when capture or encoding fails.

Usage:
    python scripts/preview/generate_preview.py
    SITE_URL=http://127.0.0.1:8000 python scripts/preview/generate_preview.py --mode scroll
    python scripts/preview/generate_preview.py --mode sections --out-dir ./docs --verbose

Exit codes:
    0: preview written
    1: any fatal error (missing ffmpeg, navigation timeout, encoder failure, ...)
"""

from __future__ import annotations

import argparse
import os
import shutil
import subprocess
import sys
import time
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

try:
    from PIL import Image
except ImportError as exc:  # pragma: no cover
    raise SystemExit(
        "Pillow is required. Install with: pip install pillow"
    ) from exc

try:
    from playwright.sync_api import Error as PlaywrightError
    from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
    from playwright.sync_api import Browser, BrowserContext, Page, Video, sync_playwright
except ImportError as exc:  # pragma: no cover
    raise SystemExit(
        "Playwright is required. Install with: pip install playwright && playwright install chromium"
    ) from exc


ROOT = Path(__file__).resolve().parents[2]
DEFAULT_SITE_URL = "https://konstpic.github.io/expertise-matrix/"
VIEWPORT = {"width": 1280, "height": 720}
DEVICE_SCALE_FACTOR = 2
BROWSER_ARGS = ["--no-sandbox", "--disable-setuid-sandbox"]

NAVIGATION_TIMEOUT_MS = 30_000
ENTRANCE_SETTLE_MS = 2000
INTERACTION_SETTLE_MS = 500
MOUSE_NUDGE = (100, 100)

GIF_FPS = 10
GIF_WIDTH = 1280

FRAME_COUNT = 30
FRAME_SETTLE_MS = 300
FRAME_PAD = 3
FRAME_PROGRESS_EVERY = 5

SCROLL_DURATION_MS = 12_000
SCROLL_STEPS = 120
SCROLL_PROGRESS_EVERY = 20
SCROLL_END_HOLD_MS = 1000

HERO_SELECTOR = ".hero"
SECTION_SELECTOR = "section"
REVEAL_CLASS = "visible"
TYPING_SELECTOR = "[data-typing]"
TYPING_DONE_CLASS = "typing-complete"
SECTION_SCROLL_SETTLE_MS = 800
POLL_INTERVAL_MS = 200
REVEAL_MAX_WAIT_MS = 5000
TYPING_MAX_WAIT_MS = 15_000
HERO_HOLD_MS = 3000
SECTION_PAUSE_MS = 1500

VIDEO_FLUSH_GRACE_S = 1.0
VIDEO_EXTENSIONS = (".webm", ".mp4", ".mkv", ".mov")

FFMPEG_INSTALL_HINT = (
    "Install ffmpeg from https://ffmpeg.org/download.html "
    "(apt install ffmpeg / brew install ffmpeg), "
    "or run in a CI image that ships it."
)

MAX_SCROLL_JS = """
() => Math.max(
  document.body.scrollHeight,
  document.documentElement.scrollHeight
) - window.innerHeight
"""
SMOOTH_SCROLL_JS = "(top) => window.scrollTo({ top, behavior: 'smooth' })"
JUMP_SCROLL_JS = "(top) => window.scrollTo({ top, behavior: 'instant' })"
SCROLL_INTO_CENTER_JS = "(el) => el.scrollIntoView({ behavior: 'smooth', block: 'center' })"
HAS_CLASS_JS = "(el, cls) => el.classList.contains(cls)"
ADD_CLASS_JS = "(el, cls) => el.classList.add(cls)"
TYPING_DONE_JS = """
(el, [selector, doneClass]) => Array.from(el.querySelectorAll(selector))
  .every((node) => node.classList.contains(doneClass))
"""


class PreviewError(RuntimeError):
    """Fatal error that aborts a preview run."""


class MissingDependencyError(PreviewError):
    pass


class NavigationError(PreviewError):
    pass


class CaptureError(PreviewError):
    pass


class AssetNotProducedError(PreviewError):
    pass


class EncoderError(PreviewError):
    def __init__(self, message: str, returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.returncode = returncode


@dataclass
class PreviewConfig:
    url: str = DEFAULT_SITE_URL
    mode: str = "frames"
    out_dir: Path = ROOT
    fps: int = GIF_FPS
    width: int = GIF_WIDTH
    frame_count: int = FRAME_COUNT
    frame_settle_ms: int = FRAME_SETTLE_MS
    scroll_steps: int = SCROLL_STEPS
    scroll_duration_ms: int = SCROLL_DURATION_MS
    poll_interval_ms: int = POLL_INTERVAL_MS
    reveal_max_wait_ms: int = REVEAL_MAX_WAIT_MS
    typing_max_wait_ms: int = TYPING_MAX_WAIT_MS
    verbose: bool = False


@dataclass
class Artifacts:
    """Paths produced by one run. Everything except `output` is intermediate."""

    out_dir: Path
    frames: list[Path] = field(default_factory=list)
    frame_width: int = FRAME_PAD

    @property
    def frames_dir(self) -> Path:
        return self.out_dir / "_frames"

    @property
    def video_dir(self) -> Path:
        return self.out_dir / "_raw-video"

    @property
    def raw_video(self) -> Path:
        return self.out_dir / "preview-raw.webm"

    @property
    def palette(self) -> Path:
        return self.out_dir / "preview-palette.png"

    @property
    def output(self) -> Path:
        return self.out_dir / "preview.gif"

    @property
    def partial_output(self) -> Path:
        return self.out_dir / "preview.partial.gif"

    @property
    def frame_pattern(self) -> Path:
        return self.frames_dir / f"frame-%0{self.frame_width}d.png"

    def sweep_stale(self) -> None:
        # A crashed earlier run may have left higher-numbered frames that the
        # encoder glob would otherwise pick up.
        if self.frames_dir.is_dir():
            self.frames.extend(sorted(self.frames_dir.glob("frame-*.png")))
        self.cleanup()

    def cleanup(self) -> None:
        for path in [*self.frames, self.raw_video, self.palette, self.partial_output]:
            path.unlink(missing_ok=True)
        self.frames.clear()
        # Only removed once empty; foreign files in it are left alone.
        with suppress(OSError):
            self.frames_dir.rmdir()
        shutil.rmtree(self.video_dir, ignore_errors=True)


@dataclass
class CaptureMode:
    key: str
    title: str
    records_video: bool
    runner: Callable[[Page, PreviewConfig, Artifacts], None]


@dataclass
class EncoderInput:
    path: Path
    framerate: Optional[int] = None


@dataclass
class EncoderCommand:
    args: list[str]
    expected_returncode: int = 0
    inherit_output: bool = False

    def run(self) -> None:
        if self.inherit_output:
            completed = subprocess.run(self.args, check=False)
            stderr = ""
        else:
            completed = subprocess.run(self.args, capture_output=True, text=True, check=False)
            stderr = completed.stderr or ""
        if completed.returncode != self.expected_returncode:
            tail = "\n".join(stderr.strip().splitlines()[-5:])
            message = f"{Path(self.args[0]).name} exited with code {completed.returncode}"
            if tail:
                message = f"{message}:\n{tail}"
            raise EncoderError(message, returncode=completed.returncode)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Capture a site with Playwright and encode a looping preview GIF.",
    )
    parser.add_argument(
        "--url",
        default=os.environ.get("SITE_URL") or DEFAULT_SITE_URL,
        help="Page to capture (default: $SITE_URL, then the project site).",
    )
    parser.add_argument(
        "--mode",
        default="frames",
        choices=sorted(CAPTURE_MODES),
        help="Capture strategy.",
    )
    parser.add_argument(
        "--out-dir",
        default=str(ROOT),
        help="Directory for preview.gif and its intermediates.",
    )
    parser.add_argument(
        "--frames",
        type=int,
        default=FRAME_COUNT,
        help="Frames to capture in frames mode.",
    )
    parser.add_argument(
        "--fps",
        type=int,
        default=GIF_FPS,
        help="GIF frame rate.",
    )
    parser.add_argument(
        "--width",
        type=int,
        default=GIF_WIDTH,
        help="GIF width in pixels; height keeps the aspect ratio.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Show ffmpeg output.",
    )
    return parser.parse_args(argv)


def config_from_args(args: argparse.Namespace) -> PreviewConfig:
    if args.frames < 1:
        raise SystemExit("--frames must be at least 1")
    return PreviewConfig(
        url=args.url,
        mode=args.mode,
        out_dir=Path(args.out_dir).resolve(),
        fps=args.fps,
        width=args.width,
        frame_count=args.frames,
        verbose=args.verbose,
    )


def poll_until(
    condition: Callable[[], bool],
    *,
    timeout_ms: float,
    interval_ms: float,
    sleep: Optional[Callable[[float], None]] = None,
    clock: Optional[Callable[[], float]] = None,
) -> bool:
    """Check `condition` every `interval_ms` until it holds or the budget runs out.

    Returns False on timeout instead of raising. The condition is always
    checked at least once, and the last sleep is trimmed to the remaining
    budget so the call returns within `timeout_ms` (plus one check).
    """
    sleep = sleep or time.sleep
    clock = clock or time.monotonic
    deadline = clock() + timeout_ms / 1000
    while True:
        if condition():
            return True
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        sleep(min(interval_ms / 1000, remaining))


def scroll_offset(step: int, steps: int, max_scroll: float) -> float:
    if steps <= 0 or max_scroll <= 0:
        return 0.0
    offset = step / steps * max_scroll
    return min(max(offset, 0.0), float(max_scroll))


def is_in_viewport(box: Optional[dict], viewport: dict = VIEWPORT) -> bool:
    if not box:
        return False
    bottom = box["y"] + box["height"]
    right = box["x"] + box["width"]
    if bottom <= 0 or right <= 0:
        return False
    return box["y"] < viewport["height"] and box["x"] < viewport["width"]


def frame_pad_width(total: int) -> int:
    return max(FRAME_PAD, len(str(max(total - 1, 0))))


def frame_filename(index: int, width: int = FRAME_PAD) -> str:
    return f"frame-{index:0{width}d}.png"


def measure_max_scroll(page: Page) -> float:
    return max(float(page.evaluate(MAX_SCROLL_JS)), 0.0)


def _page_sleep(page: Page) -> Callable[[float], None]:
    return lambda seconds: page.wait_for_timeout(seconds * 1000)


def require_ffmpeg() -> str:
    ffmpeg = shutil.which("ffmpeg")
    if not ffmpeg:
        raise MissingDependencyError(f"ffmpeg encoder is required to build the GIF. {FFMPEG_INSTALL_HINT}")
    return ffmpeg


def new_page(browser: Browser, records_video: bool, artifacts: Artifacts) -> tuple[BrowserContext, Page]:
    options: dict = {
        "viewport": VIEWPORT,
        "device_scale_factor": DEVICE_SCALE_FACTOR,
    }
    if records_video:
        artifacts.video_dir.mkdir(parents=True, exist_ok=True)
        options["record_video_dir"] = str(artifacts.video_dir)
        options["record_video_size"] = VIEWPORT
    context = browser.new_context(**options)
    page = context.new_page()
    return context, page


def load_page(page: Page, url: str) -> None:
    print(f"[preview] loading {url}")
    try:
        page.goto(url, wait_until="networkidle", timeout=NAVIGATION_TIMEOUT_MS)
    except PlaywrightTimeoutError as exc:
        raise NavigationError(
            f"Timed out after {NAVIGATION_TIMEOUT_MS} ms waiting for {url} to go network-idle"
        ) from exc
    page.wait_for_timeout(ENTRANCE_SETTLE_MS)
    # Some pages gate autoplay on a first interaction.
    page.mouse.move(*MOUSE_NUDGE)
    page.wait_for_timeout(INTERACTION_SETTLE_MS)


def _ordered_sections(page: Page) -> tuple[list, bool]:
    """Hero first (when present), then the remaining sections in document order."""
    hero = page.locator(HERO_SELECTOR)
    rest = page.locator(f"{SECTION_SELECTOR}:not({HERO_SELECTOR})")
    has_hero = hero.count() > 0
    sections = [hero.first] if has_hero else []
    sections.extend(rest.nth(idx) for idx in range(rest.count()))
    return sections, has_hero


def _wait_for_reveal(page: Page, section, config: PreviewConfig) -> bool:
    revealed = poll_until(
        lambda: bool(section.evaluate(HAS_CLASS_JS, REVEAL_CLASS)),
        timeout_ms=config.reveal_max_wait_ms,
        interval_ms=config.poll_interval_ms,
        sleep=_page_sleep(page),
    )
    if revealed:
        return True
    if is_in_viewport(section.bounding_box()):
        section.evaluate(ADD_CLASS_JS, REVEAL_CLASS)
        return True
    return False


def capture_sections(page: Page, config: PreviewConfig, artifacts: Artifacts) -> None:
    sections, has_hero = _ordered_sections(page)
    print(f"[preview] walking {len(sections)} sections")
    for idx, section in enumerate(sections):
        section.evaluate(SCROLL_INTO_CENTER_JS)
        page.wait_for_timeout(SECTION_SCROLL_SETTLE_MS)

        if idx == 0 and has_hero:
            page.wait_for_timeout(HERO_HOLD_MS)
        elif not _wait_for_reveal(page, section, config):
            print(f"[preview] warning: section {idx + 1} never revealed", file=sys.stderr)
        else:
            typed = poll_until(
                lambda: bool(section.evaluate(TYPING_DONE_JS, [TYPING_SELECTOR, TYPING_DONE_CLASS])),
                timeout_ms=config.typing_max_wait_ms,
                interval_ms=config.poll_interval_ms,
                sleep=_page_sleep(page),
            )
            if not typed:
                print(f"[preview] warning: typing in section {idx + 1} did not finish", file=sys.stderr)

        page.wait_for_timeout(SECTION_PAUSE_MS)
        print(f"  section {idx + 1}/{len(sections)} done")


def capture_scroll(page: Page, config: PreviewConfig, artifacts: Artifacts) -> None:
    max_scroll = measure_max_scroll(page)
    steps = config.scroll_steps
    interval_ms = config.scroll_duration_ms / max(steps, 1)
    print(f"[preview] scrolling {max_scroll:.0f}px over {config.scroll_duration_ms} ms")
    for step in range(steps + 1):
        page.evaluate(SMOOTH_SCROLL_JS, scroll_offset(step, steps, max_scroll))
        page.wait_for_timeout(interval_ms)
        if step and step % SCROLL_PROGRESS_EVERY == 0:
            print(f"  scrolled {step}/{steps} steps")
    page.wait_for_timeout(SCROLL_END_HOLD_MS)


def capture_frames(page: Page, config: PreviewConfig, artifacts: Artifacts) -> None:
    total = config.frame_count
    artifacts.frame_width = frame_pad_width(total)
    artifacts.frames_dir.mkdir(parents=True, exist_ok=True)
    max_scroll = measure_max_scroll(page)
    print(f"[preview] capturing {total} frames")
    for idx in range(total):
        page.evaluate(JUMP_SCROLL_JS, scroll_offset(idx, total - 1, max_scroll))
        page.wait_for_timeout(config.frame_settle_ms)
        shot = artifacts.frames_dir / frame_filename(idx, artifacts.frame_width)
        artifacts.frames.append(shot)
        page.screenshot(path=str(shot), full_page=False, type="png")
        if (idx + 1) % FRAME_PROGRESS_EVERY == 0:
            print(f"  captured {idx + 1}/{total} frames")


CAPTURE_MODES: dict[str, CaptureMode] = {
    "sections": CaptureMode(
        key="sections",
        title="Section walk with reveal and typing waits",
        records_video=True,
        runner=capture_sections,
    ),
    "scroll": CaptureMode(
        key="scroll",
        title="Continuous smooth scroll",
        records_video=True,
        runner=capture_scroll,
    ),
    "frames": CaptureMode(
        key="frames",
        title="Discrete viewport screenshots",
        records_video=False,
        runner=capture_frames,
    ),
}


def locate_video(expected: Optional[Path], video_dir: Path) -> Optional[Path]:
    if expected is not None and expected.exists():
        return expected
    if not video_dir.is_dir():
        return None
    for candidate in sorted(video_dir.iterdir()):
        if candidate.is_file() and candidate.suffix.lower() in VIDEO_EXTENSIONS:
            return candidate
    return None


def finalize_video(
    video: Optional[Video],
    artifacts: Artifacts,
    sleep: Callable[[float], None] = time.sleep,
) -> Path:
    """Adopt the recording as the raw capture. Call only after the context is closed."""
    expected = Path(video.path()) if video is not None else None
    sleep(VIDEO_FLUSH_GRACE_S)
    found = locate_video(expected, artifacts.video_dir)
    if found is None:
        raise AssetNotProducedError(f"No recording was produced in {artifacts.video_dir}")
    found.replace(artifacts.raw_video)
    return artifacts.raw_video


def capture(browser: Browser, config: PreviewConfig, mode: CaptureMode, artifacts: Artifacts) -> EncoderInput:
    context, page = new_page(browser, mode.records_video, artifacts)
    video = None
    try:
        load_page(page, config.url)
        print(f"[preview] {mode.key}: {mode.title}")
        mode.runner(page, config, artifacts)
    except PlaywrightTimeoutError as exc:
        raise CaptureError(f"Capture mode '{mode.key}' timed out") from exc
    finally:
        # Closing the page and context is what flushes the recording.
        try:
            page.close()
        finally:
            if mode.records_video:
                video = page.video
            context.close()

    if mode.records_video:
        return EncoderInput(finalize_video(video, artifacts))
    if not artifacts.frames:
        raise AssetNotProducedError("No frames were captured")
    return EncoderInput(artifacts.frame_pattern, framerate=config.fps)


def _input_args(source: EncoderInput) -> list[str]:
    args: list[str] = []
    if source.framerate is not None:
        args.extend(["-framerate", str(source.framerate)])
    args.extend(["-i", str(source.path)])
    return args


def _scale_filter(fps: int, width: int) -> str:
    return f"fps={fps},scale={width}:-1:flags=lanczos"


def build_palette_command(ffmpeg: str, source: EncoderInput, palette: Path, *, fps: int, width: int) -> list[str]:
    return [
        ffmpeg,
        "-y",
        *_input_args(source),
        "-vf",
        f"{_scale_filter(fps, width)},palettegen",
        str(palette),
    ]


def build_gif_command(
    ffmpeg: str,
    source: EncoderInput,
    palette: Path,
    output: Path,
    *,
    fps: int,
    width: int,
) -> list[str]:
    return [
        ffmpeg,
        "-y",
        *_input_args(source),
        "-i",
        str(palette),
        "-filter_complex",
        f"[0:v]{_scale_filter(fps, width)}[x];[x][1:v]paletteuse",
        "-loop",
        "0",
        str(output),
    ]


def encode_gif(ffmpeg: str, source: EncoderInput, artifacts: Artifacts, config: PreviewConfig) -> Path:
    print("[preview] generating palette")
    EncoderCommand(
        build_palette_command(ffmpeg, source, artifacts.palette, fps=config.fps, width=config.width),
        inherit_output=config.verbose,
    ).run()
    print("[preview] encoding GIF")
    EncoderCommand(
        build_gif_command(
            ffmpeg, source, artifacts.palette, artifacts.partial_output, fps=config.fps, width=config.width
        ),
        inherit_output=config.verbose,
    ).run()
    if not artifacts.partial_output.exists():
        raise AssetNotProducedError(f"ffmpeg reported success but {artifacts.partial_output} is missing")
    # A failed encode never touches the previous preview.
    artifacts.partial_output.replace(artifacts.output)
    return artifacts.output


def describe_gif(path: Path) -> tuple[int, tuple[int, int]]:
    with Image.open(path) as img:
        return getattr(img, "n_frames", 1), img.size


def generate_preview(config: PreviewConfig) -> Path:
    mode = CAPTURE_MODES[config.mode]
    ffmpeg = require_ffmpeg()
    config.out_dir.mkdir(parents=True, exist_ok=True)
    artifacts = Artifacts(config.out_dir)
    artifacts.sweep_stale()

    print(f"[preview] site: {config.url}")
    try:
        with sync_playwright() as playwright:
            browser = playwright.chromium.launch(headless=True, args=BROWSER_ARGS)
            try:
                source = capture(browser, config, mode, artifacts)
            finally:
                browser.close()
        output = encode_gif(ffmpeg, source, artifacts, config)
    finally:
        print("[preview] cleaning up intermediates")
        artifacts.cleanup()

    frames, (width, height) = describe_gif(output)
    size_mb = output.stat().st_size / (1024 * 1024)
    print(f"[preview] wrote {output} ({frames} frames, {width}x{height}, {size_mb:.1f}MB)")
    return output


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    config = config_from_args(args)
    try:
        generate_preview(config)
    except (PreviewError, PlaywrightError) as exc:
        print(f"[preview] error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
