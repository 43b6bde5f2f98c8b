import sys

from ssllaunch.cli import main

sys.exit(main())
