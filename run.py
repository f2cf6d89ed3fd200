"""
Entry point for Flask.

Usage (from project root):

    flask --app run.py seed-demo
    flask --app run.py --debug run

Time-driven transitions run from an external scheduler:

    flask --app run.py poll-deadlines

"""

from procurex import create_app

# WSGI application object. `flask run` looks for this `app` variable.
app = create_app()

if __name__ == "__main__":
    # For direct `python run.py` usage (dev only). Use a WSGI server in production.
    app.run(debug=True)
