"""Allow `python -m netbox_manager`."""

from .cli import main

if __name__ == '__main__':
    raise SystemExit(main())
