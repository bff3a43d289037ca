import sys

from relsign.cli import main

sys.exit(main())
