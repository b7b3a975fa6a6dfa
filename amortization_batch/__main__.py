import sys

from amortization_batch.cli import main

sys.exit(main())
