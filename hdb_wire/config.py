"""
Configuration Management for hdb_wire
=====================================

Builds connection parameters from YAML files, dictionaries or the
environment.
"""

import os
import re
from typing import Any, Dict

import yaml

from .params import BusyPolicy, ConnectParams

_ENV_PATTERN = re.compile(r'\$\{(\w+)(:-([^}]*))?\}')


def _env_var(name: str, default: str = "") -> str:
    """Get environment variable with optional default."""
    return os.environ.get(name, default)


def default_params() -> ConnectParams:
    """
    Connection parameters taken from the environment.

    HDB_HOST, HDB_PORT, HDB_USER and HDB_PASSWORD (or HDB_TOKEN for JWT
    logins) are read; HDB_TLS=1 enables TLS.
    """
    token = _env_var("HDB_TOKEN") or None
    return ConnectParams(
        host=_env_var("HDB_HOST", "localhost"),
        port=int(_env_var("HDB_PORT", "30015")),
        user=_env_var("HDB_USER", "SYSTEM"),
        password=None if token else _env_var("HDB_PASSWORD"),
        token=token,
        use_tls=_env_var("HDB_TLS", "0").lower() in ("1", "true", "yes"),
    )


def load_params(config_path: str) -> ConnectParams:
    """Load connection parameters from YAML file."""
    with open(config_path, 'r') as f:
        data = yaml.safe_load(f)

    return parse_params(data or {})


def parse_params(data: Dict[str, Any]) -> ConnectParams:
    """Parse connection parameters from dictionary"""
    server = data.get('server', {})
    auth = data.get('auth', {})
    tls = data.get('tls', {})
    client = data.get('client', {})

    busy_policy = client.get('busy_policy', 'wait')
    if isinstance(busy_policy, str):
        busy_policy = BusyPolicy(busy_policy)

    session_options = {str(key): str(value)
                       for key, value in (client.get('session_options') or {}).items()}

    return ConnectParams(
        host=server.get('host', ''),
        port=int(server.get('port', 30015)),
        user=auth.get('user', ''),
        password=auth.get('password'),
        token=auth.get('token'),
        use_tls=tls.get('enabled', False),
        tls_verify=tls.get('verify', True),
        tls_ca_cert=tls.get('ca_cert'),
        client_locale=client.get('locale'),
        autocommit=client.get('autocommit', True),
        session_options=session_options,
        connect_timeout=float(client.get('connect_timeout', 30.0)),
        read_timeout=float(client.get('read_timeout', 300.0)),
        fetch_size=int(client.get('fetch_size', 32)),
        lob_read_length=int(client.get('lob_read_length', 1024 * 1024)),
        max_message_size=int(client.get('max_message_size', 131072)),
        busy_policy=busy_policy,
    )


def create_sample_config() -> str:
    """Generate sample configuration YAML"""
    return """# hdb-wire Configuration
# ======================

# Database server
server:
  host: "${HDB_HOST:-hana.example.com}"
  port: 30015

# Credentials: either password or token (JWT)
auth:
  user: "${HDB_USER:-SYSTEM}"
  password: "${HDB_PASSWORD}"
  # token: "${HDB_TOKEN}"

# Optional: TLS configuration
tls:
  enabled: false
  verify: true
  # ca_cert: "/path/to/ca-cert.pem"

# Client settings
client:
  locale: "en_US"
  autocommit: true

  # Timeouts in seconds
  connect_timeout: 30
  read_timeout: 300

  # Rows per FETCHNEXT and bytes per LOB read
  fetch_size: 32
  lob_read_length: 1048576
  max_message_size: 131072

  # wait: queue behind a running request, fail: raise ConnectionBusy
  busy_policy: "wait"

  # Sent to the server as client info
  session_options:
    APPLICATIONUSER: "reporting"
"""


def save_sample_config(path: str):
    """Save sample configuration to file"""
    with open(path, 'w') as f:
        f.write(create_sample_config())


# Environment variable support
def substitute_env(content: str) -> str:
    """Replace ${ENV_VAR} and ${ENV_VAR:-default} patterns"""
    def replace_env(match):
        var_name = match.group(1)
        default = match.group(3) if match.group(3) else ''
        return os.environ.get(var_name, default)

    return _ENV_PATTERN.sub(replace_env, content)


def load_params_with_env(config_path: str) -> ConnectParams:
    """Load connection parameters with environment variable substitution"""
    with open(config_path, 'r') as f:
        content = f.read()

    data = yaml.safe_load(substitute_env(content))
    return parse_params(data or {})
