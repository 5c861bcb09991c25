"""Allow running the package as ``python -m gpu_job_mapper``."""

from .agent import main

if __name__ == "__main__":
    raise SystemExit(main())
