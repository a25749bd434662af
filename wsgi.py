import os
from dotenv import load_dotenv

load_dotenv()

from estate_billing import create_app

config = os.getenv("APP_ENV", "production")

app = create_app(config)
