# =============================================================================
# Ctrl-Mail Entry Point for `python -m ctrl_mail`
# =============================================================================
# Equivalent to running the 'ctrl-mail' command after installation:
#
#   python -m ctrl_mail sync personal
# =============================================================================

import sys

from ctrl_mail.app import main

if __name__ == "__main__":
    sys.exit(main())
