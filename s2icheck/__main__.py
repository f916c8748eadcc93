import sys

from s2icheck.cli import main

sys.exit(main())
