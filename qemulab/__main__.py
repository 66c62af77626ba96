import sys

from qemulab import cli

sys.exit(cli.main())
