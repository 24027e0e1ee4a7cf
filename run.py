"""Local development entry point.

Usage:
    python run.py

Serves the JSON API on port 5001; the React frontend (FRONTEND_URL) talks
to it and Stripe webhooks are forwarded to /api/webhook/stripe with
`stripe listen --forward-to localhost:5001/api/webhook/stripe`.
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before anything else

from artpero import create_app

app = create_app()

if __name__ == "__main__":
    app.run(debug=True, host="0.0.0.0", port=5001)
