import sys

from powa_sentinel.cli import main

sys.exit(main())
