import sys

from cronrunner.cli import main

sys.exit(main())
