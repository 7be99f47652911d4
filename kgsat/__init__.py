"""kgsat: privacy-partitioned knowledge graph maintenance and saturation."""

from kgsat.config import PACKAGE_VERSION as __version__
