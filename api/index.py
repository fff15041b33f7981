import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from claims.api import app
from claims.logging_config import configure_logging

configure_logging()

app.root_path = "/api"

handler = Mangum(app)
