#!/usr/bin/env python3
"""
Local vaultsync server with the development config.

No domain data provider is wired here, so exports fail until the host
application passes one to create_app().
"""
import os
from vaultsync import create_app

if __name__ == '__main__':
    app = create_app('development')

    # The scheduler starts in the reloader child process only
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=True)
