# =============================================================================
# mailsync Entry Point for `python -m mailsync`
# =============================================================================
# This module allows mailsync to be run as a Python module:
#
#   python -m mailsync folders
#
# This is equivalent to running the 'mailsync' command after installation.
# =============================================================================

import sys

from mailsync.cli import main

if __name__ == "__main__":
    sys.exit(main())
