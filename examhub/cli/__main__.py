import sys

from examhub.cli import main

sys.exit(main())
