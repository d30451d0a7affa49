import sys

from wasmbridge.cli import main

sys.exit(main())
