"""WSGI entry point for production deployment.

- Gunicorn: gunicorn wsgi:app
- Waitress: waitress-serve --port=8888 wsgi:app
"""

from app import create_app

app = create_app()

if __name__ == "__main__":
    # For development only
    app.run()
