"""
WSGI entry point for the skip-trace API (`gunicorn wsgi:app`).

Runs are executed by RQ workers started separately: `rq worker --url $REDIS_URL`.
"""
import os

from skiptrace import create_app

app = create_app()

if __name__ == '__main__':
    app.run(host='0.0.0.0', port=int(os.getenv('PORT', 8080)), debug=os.getenv('FLASK_DEBUG') == '1')
