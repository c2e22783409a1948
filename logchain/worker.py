"""
Log worker entry point.

    python -m logchain.worker
"""

from logchain.services.log_queue import main

if __name__ == "__main__":
    main()
