import sys

from vshield.cli import main

sys.exit(main())
