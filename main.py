import logging
import os
import subprocess
import sys

import pos_config
from pos_server import app, terminal

log = logging.getLogger('main')


def start_receipt_agent():
    if os.getenv('RECEIPT_AGENT_AUTO_START', '0') != '1':
        return None
    if os.environ.get('WERKZEUG_RUN_MAIN') == 'true':
        return None
    script_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'receipt_agent.py')
    if not os.path.exists(script_path):
        return None
    env = os.environ.copy()
    env.setdefault('RECEIPT_AGENT_HOST', '127.0.0.1')
    env.setdefault('RECEIPT_AGENT_PORT', '5001')
    log.info("Starting receipt agent on %s:%s", env['RECEIPT_AGENT_HOST'], env['RECEIPT_AGENT_PORT'])
    return subprocess.Popen([sys.executable, script_path], env=env)


def startup():
    """Bring the local database up before serving; works offline."""
    t = terminal()
    result = t.sync.initialize_database(sync_direction='pull')
    if result['offline']:
        log.warning("Starting in offline mode: %s", result.get('error'))
    elif not result['success']:
        log.error("Database initialization failed: %s", result.get('error'))
    return result


if __name__ == '__main__':
    pos_config.configure_logging()
    agent_proc = start_receipt_agent()
    try:
        startup()
        app.run(host=pos_config.SERVER_HOST, port=pos_config.SERVER_PORT, debug=pos_config.SERVER_DEBUG)
    finally:
        if agent_proc:
            agent_proc.terminate()
