import sys

from cardsmith.cli import main

sys.exit(main())
