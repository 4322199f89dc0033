"""Allow running kestrel as a module: python -m kestrel."""

from kestrel.runner import main

if __name__ == "__main__":
    main()
