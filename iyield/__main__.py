import sys

from iyield.cli import main

sys.exit(main())
