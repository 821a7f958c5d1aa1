import sys

from hetzner_k3s.cli import main

sys.exit(main())
