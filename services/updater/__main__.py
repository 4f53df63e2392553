"""Allow ``python -m services.updater``."""

from services.updater.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
