import sys

from checkbook.cli import main

sys.exit(main())
