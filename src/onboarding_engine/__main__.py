import sys

from onboarding_engine.cli import main

sys.exit(main())
