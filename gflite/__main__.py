import sys

from gflite.main import main

sys.exit(main())
