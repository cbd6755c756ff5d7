import sys

from .locomotive import main

sys.exit(main())
