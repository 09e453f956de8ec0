import sys

from voicegate.live_session import main

sys.exit(main())
