#!/usr/bin/env python3
"""
imgdir2pdf - convert a directory of images into a single PDF.

Lists the images in a directory, orders them by a numeric-aware filename sort,
sizes each page from a reference template (A4 by default), and writes one page
per image into DIR/<DIR>.pdf.
"""

from __future__ import annotations

import argparse
import logging
import os
import struct
import sys
import tempfile
from dataclasses import dataclass, field
from typing import NoReturn

import fitz
import yaml
from PIL import Image, UnidentifiedImageError
from platformdirs import site_config_dir, user_config_dir
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

__version__ = "0.1.0"

APP_NAME = "imgdir2pdf"
CONFIG_FILENAME = "imgdir2pdf.yaml"

# Exit codes
EXIT_SUCCESS = 0
EXIT_CONFIG_ERROR = 1
EXIT_FILE_ERROR = 2
EXIT_DECODE_ERROR = 3
EXIT_NO_IMAGES = 4
EXIT_VERIFICATION_FAILED = 5

# Reference page in millimetres (A4)
A4_WIDTH = 210.0
A4_HEIGHT = 297.0

DEFAULT_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif")

# Formats Pillow may identify a file as
PROBE_FORMATS = ("PNG", "JPEG", "GIF")

# Tolerance when comparing written page sizes, in points
SIZE_TOLERANCE = 0.5

log = logging.getLogger(APP_NAME)


# =============================================================================
# Errors
# =============================================================================


class Imgdir2pdfError(Exception):
    """Base class for errors that end a run."""

    exit_code = EXIT_FILE_ERROR


class ConfigError(Imgdir2pdfError):
    """Configuration file could not be read or holds invalid values."""

    exit_code = EXIT_CONFIG_ERROR


class InputError(Imgdir2pdfError):
    """A directory or file could not be listed, resolved or opened."""

    exit_code = EXIT_FILE_ERROR


class DecodeError(Imgdir2pdfError):
    """An image header could not be parsed as a supported format."""

    exit_code = EXIT_DECODE_ERROR


class EmptyInputError(Imgdir2pdfError):
    """No supported images were found."""

    exit_code = EXIT_NO_IMAGES


class WriteError(Imgdir2pdfError):
    """The finished document could not be written."""

    exit_code = EXIT_SUCCESS


class VerificationError(Imgdir2pdfError):
    """The written document does not match the planned pages."""

    exit_code = EXIT_VERIFICATION_FAILED


# =============================================================================
# Data Types
# =============================================================================


@dataclass(frozen=True, slots=True)
class PageSize:
    """Page dimensions in millimetres."""

    width: float
    height: float

    def in_points(self) -> tuple[float, float]:
        return (self.width * mm, self.height * mm)


@dataclass(frozen=True, slots=True)
class ImageFileRef:
    """A source image found while scanning."""

    path: str
    extension: str


@dataclass(frozen=True, slots=True)
class PagePlan:
    """One output page: the image and the size of the page it covers."""

    image: ImageFileRef
    size: PageSize


@dataclass(frozen=True)
class Config:
    """Fixed settings for a run."""

    template: PageSize = field(default_factory=lambda: PageSize(A4_WIDTH, A4_HEIGHT))
    extensions: tuple[str, ...] = DEFAULT_EXTENSIONS


# =============================================================================
# Natural Sort
# =============================================================================


def split_extension(filename: str) -> tuple[str, str]:
    """Split at the last '.', keeping the dot on the extension."""
    dot = filename.rfind(".")
    if dot < 0:
        return filename, ""
    return filename[:dot], filename[dot:]


def natural_key(filename: str) -> bytes:
    """
    Build a byte-wise sort key that orders trailing numbers by value.

    The trailing digit run of the stem is replaced by its value plus one as an
    8-byte big-endian integer; a stem without digits gets eight zero bytes.
    This gives amt, amt0, amt2, amt10, amt099, amt100.
    """
    stem, ext = split_extension(filename)

    i = len(stem)
    while i > 0 and "0" <= stem[i - 1] <= "9":
        i -= 1
    prefix, digits = stem[:i], stem[i:]

    value = 0
    if digits:
        value = int(digits) + 1
        if value > 0xFFFFFFFFFFFFFFFF:
            value = 0

    return os.fsencode(prefix) + struct.pack(">Q", value) + os.fsencode(ext)


def natural_sorted(names: list[str]) -> list[str]:
    """Sort filenames by natural_key, breaking ties on the raw name."""
    return sorted(names, key=lambda name: (natural_key(name), name))


# =============================================================================
# Directory Scanning
# =============================================================================


def has_supported_extension(filename: str, extensions: tuple[str, ...]) -> bool:
    """Case-sensitive suffix match against the configured extensions."""
    return any(filename.endswith(ext) for ext in extensions)


def scan_directory(dirpath: str, extensions: tuple[str, ...] = DEFAULT_EXTENSIONS) -> list[ImageFileRef]:
    """
    List supported images in dirpath, naturally sorted.

    Directories are skipped even if their name matches. Returned paths are
    absolute.
    """
    try:
        with os.scandir(dirpath) as entries:
            names = [
                entry.name
                for entry in entries
                if not entry.is_dir() and has_supported_extension(entry.name, extensions)
            ]
    except OSError as e:
        raise InputError(f"Cannot list directory {dirpath}: {e}") from e

    images: list[ImageFileRef] = []
    for name in natural_sorted(names):
        try:
            path = os.path.abspath(os.path.join(dirpath, name))
        except OSError as e:
            raise InputError(f"Cannot resolve {name}: {e}") from e
        images.append(ImageFileRef(path=path, extension=split_extension(name)[1].lstrip(".")))

    log.debug("Found %d image(s) in %s", len(images), dirpath)
    return images


def output_path_for(dirpath: str) -> str:
    """Return DIR/<basename of DIR>.pdf, with DIR made absolute."""
    try:
        absdir = os.path.abspath(dirpath)
    except OSError as e:
        raise InputError(f"Cannot resolve {dirpath}: {e}") from e
    basename = os.path.basename(absdir)
    return os.path.join(absdir, f"{basename}.pdf")


# =============================================================================
# Image Probing
# =============================================================================


def probe_image(path: str) -> tuple[int, int]:
    """Read (width, height) in pixels from an image header."""
    try:
        with Image.open(path, formats=PROBE_FORMATS) as img:
            return img.size
    except UnidentifiedImageError as e:
        raise DecodeError(f"Cannot decode {path}: not a PNG, JPEG or GIF image") from e
    except Image.DecompressionBombError as e:
        raise DecodeError(f"Cannot decode {path}: {e}") from e
    except OSError as e:
        raise InputError(f"Cannot open {path}: {e}") from e
    except (SyntaxError, ValueError) as e:
        raise DecodeError(f"Cannot decode {path}: {e}") from e


# =============================================================================
# Page Fitting
# =============================================================================


def fit_page(template: PageSize, image_width: float, image_height: float) -> PageSize:
    """
    Compute the page size for an image.

    Width is forced to the template width and height scales by
    template_width / image_width. Height is not clamped to the template.
    image_height is only checked for being positive; it does not enter the
    result.
    """
    if image_width <= 0 or image_height <= 0:
        raise DecodeError(f"Invalid image size {image_width}x{image_height}")
    scaler = template.width / image_width
    return PageSize(width=template.width, height=template.height * scaler)


def plan_pages(images: list[ImageFileRef], config: Config) -> list[PagePlan]:
    """Probe every image and compute its page, failing before any output is written."""
    if not images:
        raise EmptyInputError("No suitable files in given directory.")

    plans: list[PagePlan] = []
    for image in images:
        width, height = probe_image(image.path)
        size = fit_page(config.template, width, height)
        log.debug("%s: %dx%d px -> %.2fx%.2f mm", image.path, width, height, size.width, size.height)
        plans.append(PagePlan(image=image, size=size))

    return plans


# =============================================================================
# PDF Operations
# =============================================================================


def describe_error(e: Exception) -> str:
    """Exception text, falling back to its type name when the message is empty."""
    return str(e).strip() or type(e).__name__


def draw_page(c: canvas.Canvas, plan: PagePlan) -> None:
    """Add one page of the planned size with the image covering it."""
    pt_w, pt_h = plan.size.in_points()
    c.setPageSize((pt_w, pt_h))
    try:
        c.drawImage(plan.image.path, 0, 0, pt_w, pt_h)
    except Exception as e:
        # Headers were probed already; this is a failure to load pixel data.
        raise DecodeError(f"Cannot decode {plan.image.path}: {describe_error(e)}") from e
    c.showPage()


def build_document(plans: list[PagePlan], output_path: str, *, verify: bool = True) -> None:
    """
    Write one page per plan to output_path.

    The document is written to a temporary file next to the target and, when
    verify is set, checked before being renamed into place. A failure never
    leaves a partial or unverified PDF behind.
    """
    if not plans:
        raise EmptyInputError("No pages to write.")

    out_dir = os.path.dirname(output_path) or "."
    try:
        with tempfile.NamedTemporaryFile(dir=out_dir, suffix=".pdf.tmp", delete=False) as tmp:
            tmp_path = tmp.name
    except OSError as e:
        raise WriteError(f"Error writing pdf: {describe_error(e)}") from e

    try:
        c = canvas.Canvas(tmp_path, pagesize=plans[0].size.in_points(), invariant=1)
        for plan in plans:
            draw_page(c, plan)
        c.save()

        if verify:
            verify_document(tmp_path, plans, name=output_path)
            log.debug("VERIFY OK: %s", output_path)

        os.replace(tmp_path, output_path)
    except OSError as e:
        os.unlink(tmp_path)
        raise WriteError(f"Error writing pdf: {describe_error(e)}") from e
    except Exception:
        os.unlink(tmp_path)
        raise


def verify_document(pdf_path: str, plans: list[PagePlan], name: str | None = None) -> None:
    """
    Re-open a written PDF and check page count and page sizes.

    name is the path reported in errors, defaulting to pdf_path.
    """
    name = name or pdf_path
    try:
        doc = fitz.open(pdf_path)
    except (RuntimeError, OSError) as e:
        raise VerificationError(f"Cannot read back {name}: {describe_error(e)}") from e

    try:
        if doc.page_count != len(plans):
            raise VerificationError(
                f"{name} has {doc.page_count} pages, expected {len(plans)}"
            )
        for number, (page, plan) in enumerate(zip(doc, plans), start=1):
            pt_w, pt_h = plan.size.in_points()
            if abs(page.rect.width - pt_w) > SIZE_TOLERANCE or abs(page.rect.height - pt_h) > SIZE_TOLERANCE:
                raise VerificationError(
                    f"{name} page {number} is {page.rect.width:.2f}x{page.rect.height:.2f} pt, "
                    f"expected {pt_w:.2f}x{pt_h:.2f} pt"
                )
    finally:
        doc.close()


def convert_directory(
    dirpath: str, config: Config | None = None, *, verify: bool = True
) -> tuple[str, int]:
    """
    Convert every supported image in dirpath into DIR/<DIR>.pdf.

    Returns (output_path, page_count).
    """
    if config is None:
        config = Config()

    output_path = output_path_for(dirpath)
    images = scan_directory(dirpath, config.extensions)
    plans = plan_pages(images, config)
    build_document(plans, output_path, verify=verify)

    return output_path, len(plans)


# =============================================================================
# Configuration
# =============================================================================


def find_config(cli_path: str | None = None) -> str | None:
    """
    Find config file in order of precedence:
    1. CLI argument
    2. IMGDIR2PDF_CONFIG environment variable
    3. ./imgdir2pdf.yaml (current directory)
    4. ~/.config/imgdir2pdf/imgdir2pdf.yaml (user config)
    5. /etc/xdg/imgdir2pdf/imgdir2pdf.yaml (site config)
    """
    candidates: list[str] = []

    if cli_path:
        candidates.append(cli_path)

    env_path = os.environ.get("IMGDIR2PDF_CONFIG")
    if env_path:
        candidates.append(env_path)

    candidates.append(os.path.join(os.getcwd(), CONFIG_FILENAME))
    candidates.append(os.path.join(user_config_dir(APP_NAME), CONFIG_FILENAME))
    candidates.append(os.path.join(site_config_dir(APP_NAME), CONFIG_FILENAME))

    for path in candidates:
        if os.path.isfile(path):
            return path

    return None


def load_config(path: str) -> Config:
    """Load a Config from a YAML file. Missing keys keep their defaults."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping")

    defaults = Config()
    template = defaults.template
    extensions = defaults.extensions

    if "template" in data:
        value = data["template"]
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise ConfigError(f"template must be [width, height], got {value!r}")
        try:
            width, height = float(value[0]), float(value[1])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"template must be numeric, got {value!r}") from e
        if width <= 0 or height <= 0:
            raise ConfigError(f"template must be positive, got {value!r}")
        template = PageSize(width, height)

    if "extensions" in data:
        value = data["extensions"]
        if not isinstance(value, list) or not value:
            raise ConfigError(f"extensions must be a non-empty list, got {value!r}")
        for ext in value:
            if not isinstance(ext, str) or not ext.strip("."):
                raise ConfigError(f"extensions must be non-empty strings, got {ext!r}")
        extensions = tuple(ext if ext.startswith(".") else f".{ext}" for ext in value)

    return Config(template=template, extensions=extensions)


# =============================================================================
# CLI
# =============================================================================


def setup_logging(*, quiet: bool = False, verbose: bool = False) -> None:
    """Configure logging based on CLI flags."""
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    for old in list(log.handlers):
        log.removeHandler(old)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    log.addHandler(handler)
    log.setLevel(level)


class HelpOnErrorParser(argparse.ArgumentParser):
    """ArgumentParser that prints full help on error."""

    def error(self, message: str) -> NoReturn:
        self.print_help(sys.stderr)
        sys.stderr.write(f"\nerror: {message}\n")
        sys.exit(2)


def build_parser() -> HelpOnErrorParser:
    parser = HelpOnErrorParser(
        prog="imgdir2pdf",
        description=(
            "Convert all images in given directory to single pdf.\n"
            "Order is defined by sorting their names."
        ),
        epilog="""
Supported files: png, jpg, jpeg, gif (first frame only)
Resulting PDF matches DIR's base name and is saved in DIR.

Config file lookup order:
  1. -c/--config argument
  2. $IMGDIR2PDF_CONFIG environment variable
  3. ./imgdir2pdf.yaml (current directory)
  4. ~/.config/imgdir2pdf/imgdir2pdf.yaml
  5. /etc/xdg/imgdir2pdf/imgdir2pdf.yaml
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "directory",
        nargs="?",
        metavar="DIR",
        help="directory of images to convert",
    )
    parser.add_argument(
        "-c",
        "--config",
        metavar="CONFIG",
        help="path to config file (default: imgdir2pdf.yaml)",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="suppress output",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="show per-page sizes",
    )
    parser.add_argument(
        "--no-verify",
        action="store_true",
        help="skip re-reading the output to check page count and sizes",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.directory is None:
        parser.print_help(sys.stdout)
        return

    setup_logging(quiet=args.quiet, verbose=args.verbose)

    try:
        if args.config and not os.path.isfile(args.config):
            raise ConfigError(f"Config file not found: {args.config}")

        config = Config()
        config_path = find_config(args.config)
        if config_path:
            log.debug("Using config: %s", config_path)
            config = load_config(config_path)

        output_path, pages = convert_directory(args.directory, config, verify=not args.no_verify)
    except WriteError as e:
        log.error("%s", e)
        return
    except Imgdir2pdfError as e:
        log.error("%s", e)
        sys.exit(e.exit_code)

    log.info("%s -> %s (%d pages)", args.directory, output_path, pages)


if __name__ == "__main__":
    main()
