"""
imsearch: Content-based image retrieval with ORB descriptors and
multi-probe LSH.

Extracts multiscale ORB keypoints and 256-bit binary descriptors, keeps
them in an append-only descriptor store and ranks stored images by how
many query descriptors find them among their approximate nearest
neighbours.

Modules:
    engine          Main SearchEngine class
    orb_extractor   Pyramid FAST detection, quadtree distribution, rBRIEF
    store           Append-only descriptor database with offset lookup
    lsh_index       Multi-probe LSH index over binary descriptors
    scoring         Vote aggregation and ranking
    matcher         Direct pairwise matching between two images
    index_builder   Bulk ingestion of image directories
    preprocessing   Image decoding and normalization
    visualize       Keypoint and match rendering
    config          SearchConfig options and validation
    errors          Typed failures
    cli             Command-line driver
"""

__version__ = "1.0.0"
