#!/usr/bin/env python3
"""Development server for the read-only catalog API"""
import os
from dbkeep import create_app

if __name__ == '__main__':
    # Use development config for local testing
    app = create_app('development')

    port = int(os.environ.get('PORT', 5000))
    app.run(host='127.0.0.1', port=port, debug=True)
