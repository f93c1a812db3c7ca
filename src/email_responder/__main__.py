import sys

from src.email_responder.server import main

sys.exit(main())
