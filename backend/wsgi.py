# backend/wsgi.py
from couponledger import create_app

app = create_app()
