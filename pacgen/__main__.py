import sys

from pacgen.cli import main

sys.exit(main())
