import sys

from slacksearch.main import main

sys.exit(main())
