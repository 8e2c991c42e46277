import sys

from egressfw.main import main

sys.exit(main())
