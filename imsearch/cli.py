"""
Command-line driver.

Each subcommand is parsed into one request dataclass and executed by
dispatch(), the single place that maps requests to the core. The
configuration is built and validated once, before any store access, and
passed explicitly to every component.
"""

import sys
import json
import logging
import argparse
from dataclasses import dataclass
from typing import List, Optional, Sequence, TextIO, Tuple, Union

from .config import OUTPUT_FORMATS, SearchConfig
from .engine import SearchEngine
from .errors import ImsearchError
from .index_builder import DEFAULT_SUFFIXES, add_images, parse_suffixes
from .matcher import match_images
from .orb_extractor import DESCRIPTOR_SIZE, OrbExtractor
from .preprocessing import load_image
from .scoring import SearchResult
from .store import DescriptorStore
from .visualize import draw_keypoints, draw_matches, save_image

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShowKeypoints:
    image: str
    output: Optional[str] = None


@dataclass(frozen=True)
class ShowMatches:
    image1: str
    image2: str
    output: Optional[str] = None


@dataclass(frozen=True)
class AddImages:
    path: str
    suffixes: Tuple[str, ...] = DEFAULT_SUFFIXES
    build_index: bool = False


@dataclass(frozen=True)
class SearchImage:
    image: str


@dataclass(frozen=True)
class BuildIndex:
    recall_sample: int = 0


@dataclass(frozen=True)
class Info:
    pass


Request = Union[ShowKeypoints, ShowMatches, AddImages, SearchImage, BuildIndex, Info]


def setup_logging(verbose: bool):
    """
    Set up logging configuration.

    Args:
        verbose: Whether to enable debug logging
    """
    log_level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def format_results(results: List[SearchResult], output_format: str) -> str:
    if output_format == "json":
        return json.dumps([r.to_dict() for r in results], ensure_ascii=False)

    lines = [f"{'SCORE':>8}  IMAGE"]
    for r in results:
        score = f"{r.score:.0f}" if float(r.score).is_integer() else f"{r.score:.2f}"
        lines.append(f"{score:>8}  {r.image_id}")
    return "\n".join(lines)


def dispatch(request: Request, config: SearchConfig, out: TextIO = sys.stdout) -> int:
    """
    Execute one request.

    Returns:
        Process exit status: 0 on success, 1 when some files of a bulk
        ingestion failed.

    Raises:
        ImsearchError: Typed failure of a single-image or store operation.
    """
    if isinstance(request, ShowKeypoints):
        extractor = OrbExtractor.from_config(config)
        image = load_image(request.image, grayscale=False)
        features = extractor.extract(image)
        print(f"{len(features)} keypoints", file=out)
        if request.output:
            save_image(draw_keypoints(image, features.keypoints), request.output)
        return 0

    if isinstance(request, ShowMatches):
        extractor = OrbExtractor.from_config(config)
        image1 = load_image(request.image1, grayscale=False)
        image2 = load_image(request.image2, grayscale=False)
        result = match_images(extractor, image1, image2)
        print(f"{len(result.features1)} x {len(result.features2)} keypoints, "
              f"{len(result)} matches", file=out)
        if request.output:
            save_image(draw_matches(image1, image2, result), request.output)
        return 0

    if isinstance(request, AddImages):
        store = DescriptorStore.open(config.db_path, DESCRIPTOR_SIZE)
        extractor = OrbExtractor.from_config(config)
        summary = add_images(store, extractor, request.path, request.suffixes)
        for path, error in summary.failed:
            print(f"FAILED  {path}: {error}", file=out)
        print(f"{len(summary.added)} added, {len(summary.duplicates)} already stored, "
              f"{len(summary.failed)} failed", file=out)
        if request.build_index:
            engine = SearchEngine(config, store=store, extractor=extractor)
            engine.build_index()
        return 1 if summary.failed else 0

    if isinstance(request, SearchImage):
        store = DescriptorStore.open(config.db_path, DESCRIPTOR_SIZE, create=False,
                                     writable=False)
        engine = SearchEngine(config, store=store)
        results = engine.search_file(request.image)
        print(format_results(results, config.output_format), file=out)
        return 0

    if isinstance(request, BuildIndex):
        store = DescriptorStore.open(config.db_path, DESCRIPTOR_SIZE)
        engine = SearchEngine(config, store=store)
        index = engine.build_index()
        print(f"Indexed {index.descriptor_count} descriptors "
              f"from {index.image_count} images", file=out)
        if request.recall_sample > 0:
            recall = engine.estimate_recall(request.recall_sample)
            print(f"Estimated recall@{config.knn_k}: {recall:.3f}", file=out)
        return 0

    if isinstance(request, Info):
        store = DescriptorStore.open(config.db_path, DESCRIPTOR_SIZE, create=False,
                                     writable=False)
        engine = SearchEngine(config, store=store)
        print(f"images:      {store.image_count}", file=out)
        print(f"descriptors: {store.descriptor_count}", file=out)
        print(f"index:       {engine.index_state}", file=out)
        return 0

    raise TypeError(f"Unknown request {type(request).__name__}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="imsearch",
                                     description="Content-based image search")
    parser.add_argument("-d", "--db-path", help="Path to image feature database")
    parser.add_argument("-n", "--orb-nfeatures", type=int, metavar="N",
                        help="The maximum number of features to retain (500)")
    parser.add_argument("--orb-scale-factor", type=float, metavar="SCALE",
                        help="Pyramid decimation ratio, greater than 1 (1.2)")
    parser.add_argument("--orb-nlevels", type=int, metavar="N",
                        help="The number of pyramid levels (8)")
    parser.add_argument("--orb-ini-th-fast", type=int, metavar="THRESHOLD",
                        help="Initial FAST threshold (20)")
    parser.add_argument("--orb-min-th-fast", type=int, metavar="THRESHOLD",
                        help="Minimum FAST threshold (7)")
    parser.add_argument("--flann-table-number", type=int, metavar="NUMBER",
                        help="The number of hash tables to use (6)")
    parser.add_argument("--flann-key-size", type=int, metavar="SIZE",
                        help="The length of the key in the hash tables (12)")
    parser.add_argument("--flann-probe-level", type=int, metavar="LEVEL",
                        help="Number of levels to use in multi-probe, 0 for standard LSH (1)")
    parser.add_argument("--flann-checks", type=int, metavar="CHECKS",
                        help="Candidates examined per query and batch, 0 for no limit (32)")
    parser.add_argument("--flann-eps", type=float, metavar="EPS",
                        help="Early termination slack (0.0)")
    parser.add_argument("--batch-size", type=int, metavar="SIZE",
                        help="Number of features to search per iteration (5000000)")
    parser.add_argument("--output-count", type=int, metavar="COUNT",
                        help="How many results to show (10)")
    parser.add_argument("--output-format", choices=OUTPUT_FORMATS,
                        help="Output format (table)")
    parser.add_argument("--knn-k", type=int, metavar="K",
                        help="Count of best matches found per each query descriptor (3)")
    parser.add_argument("--workers", type=int, metavar="N",
                        help="Worker threads for extraction and batch search (1)")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable verbose logging")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("show-keypoints", help="Show all feature points for an image")
    p.add_argument("image", help="Path to an image")
    p.add_argument("output", nargs="?", help="Optional output image")

    p = sub.add_parser("show-matches", help="Show matches between two images")
    p.add_argument("image1", help="Path to image A")
    p.add_argument("image2", help="Path to image B")
    p.add_argument("output", nargs="?", help="Optional output image")

    p = sub.add_parser("add-images", help="Add images to database")
    p.add_argument("path", help="Path to an image or folder")
    p.add_argument("-s", "--suffix", default=",".join(DEFAULT_SUFFIXES),
                   help="Scan images with these suffixes (jpg,png)")
    p.add_argument("--build-index", action="store_true",
                   help="Rebuild the search index after adding")

    p = sub.add_parser("search-image", help="Search image from database")
    p.add_argument("image", help="Path to the image to search")

    p = sub.add_parser("build-index", help="Rebuild the search index")
    p.add_argument("--recall-sample", type=int, default=0, metavar="N",
                   help="Estimate recall on N stored descriptors after building")

    sub.add_parser("info", help="Show database statistics")
    return parser


OPTION_NAMES = (
    "db_path", "orb_nfeatures", "orb_scale_factor", "orb_nlevels",
    "orb_ini_th_fast", "orb_min_th_fast", "flann_table_number",
    "flann_key_size", "flann_probe_level", "flann_checks", "flann_eps",
    "batch_size", "output_count", "output_format", "knn_k", "workers",
)


def parse_request(args: argparse.Namespace) -> Request:
    if args.command == "show-keypoints":
        return ShowKeypoints(args.image, args.output)
    if args.command == "show-matches":
        return ShowMatches(args.image1, args.image2, args.output)
    if args.command == "add-images":
        return AddImages(args.path, parse_suffixes(args.suffix), args.build_index)
    if args.command == "search-image":
        return SearchImage(args.image)
    if args.command == "build-index":
        return BuildIndex(args.recall_sample)
    return Info()


def main(argv: Optional[Sequence[str]] = None, out: TextIO = sys.stdout) -> int:
    """
    Main entry point.
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        config = SearchConfig.from_env(**{name: getattr(args, name) for name in OPTION_NAMES})
        return dispatch(parse_request(args), config, out)
    except ImsearchError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    except OSError as e:
        logger.error(f"I/O error: {e}")
        return 1
