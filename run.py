"""Local development entry point.

Usage:
    python run.py

Scheduled jobs run through the Flask CLI instead, e.g.:
    flask run-daily
    flask retry-notifications
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before anything else

from app import create_app

app = create_app()

if __name__ == "__main__":
    app.run(debug=True, host="0.0.0.0", port=5001)
