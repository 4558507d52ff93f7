# backend/wsgi.py
from tabcore import create_app

app = create_app()
