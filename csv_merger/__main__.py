"""Allow running the monitor with ``python -m csv_merger``."""

from .cli import main

if __name__ == "__main__":
    main()
