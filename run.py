from bgp_alerter import create_app
from bgp_alerter.logging_setup import setup_logging
import atexit
import os


def stop_checks(app):
    """Waits for background prefix checks to finish and closes the store."""
    print("Stopping background checks...")
    app.extensions['check_queue'].shutdown()
    app.extensions['state_store'].close()


if __name__ == '__main__':
    app = create_app()
    logging_config = app.config['BGP_ALERTER']['logging']
    setup_logging(logging_config['level'], logging_config['file'])

    # Register the cleanup function to run on exit
    atexit.register(stop_checks, app)

    # Start the Flask web server
    app.run(host=os.getenv('BGP_ALERTER_HOST', '127.0.0.1'),
            port=int(os.getenv('BGP_ALERTER_PORT', '5000')),
            debug=os.getenv('FLASK_DEBUG') == '1')
