import sys

from fanrelay.cli import main

sys.exit(main())
