"""Allow running as ``python -m probehub``."""

from . import main

main()
