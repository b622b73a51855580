"""Run delivery workers: ``python -m app.delivery``."""

from app.delivery.pool import main

if __name__ == "__main__":
    main()
