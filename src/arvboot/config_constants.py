#!/usr/bin/env python3
"""
Filename and tuning constants for arvboot.

All modules import workspace filenames from here instead of hardcoding them.
"""

# ============================================================================
# Workspace layout (relative to the per-run temporary directory)
# ============================================================================

WORKSPACE_PREFIX = 'arvados-server-boot-'
WORKSPACE_BIN_DIR = 'bin'
WORKSPACE_CONFIG = 'config.toml'
WORKSPACE_NGINX_CONFIG = 'nginx.conf'
WORKSPACE_POSTGRESQL_DIR = 'postgresql'

# TLS material written by the certificates task
ROOT_CA_KEY = 'rootCA.key'
ROOT_CA_CERT = 'rootCA.crt'
SERVER_KEY = 'server.key'
SERVER_CSR = 'server.csr'
SERVER_CERT = 'server.crt'
SERVER_SIGNING_CONFIG = 'server.cfg'
SYSTEM_OPENSSL_CONFIG = '/etc/ssl/openssl.cnf'
CERT_SUBJECT = '/C=US/ST=MA/O=Example Org/CN=localhost'

# Templates shipped inside the package
NGINX_TEMPLATE = 'nginx.conf.j2'
SAN_TEMPLATE = 'server-san.cfg.j2'

# Relative to the source tree
DISPATCH_TEST_KEY = ('lib', 'dispatchcloud', 'test', 'sshkey_dispatch')

# ============================================================================
# Process supervision and polling
# ============================================================================

# Seconds between SIGTERM and giving up on a child's output streams
GRACE_PERIOD = 5.0
HEALTH_POLL_INTERVAL = 1.0
HEALTH_REQUEST_TIMEOUT = 5.0
CONNECT_RETRY_INTERVAL = 0.1
CONNECT_TIMEOUT = 1.0

# ============================================================================
# Cluster defaults
# ============================================================================

CLUSTER_TYPES = ('production', 'development', 'test')
SECRET_HEX_LENGTH = 64
ENV_PREFIX_STRIP = ('ARVADOS_',)

TEMP_DB_NAME = 'arvados_test'
TEMP_DB_USER = 'arvados'
TEMP_DB_PASSWORD = 'insecure_arvados_test'

VOLUME_DRIVER_DIRECTORY = 'Directory'
VOLUME_UUID_INFIX = 'nyw5e'

# Services whose unset external URL gets an https:// endpoint
HTTPS_EXTERNAL_SERVICES = (
    'controller',
    'git_http',
    'keepproxy',
    'webdav',
    'webdav_download',
    'workbench1',
)

# Services whose unset external URL gets a wss:// endpoint
WSS_EXTERNAL_SERVICES = ('websocket',)

# Services that get an internal URL when none is configured
AUTOFILL_SERVICES = (
    'controller',
    'dispatch_cloud',
    'git_http',
    'health',
    'keepproxy',
    'keepstore',
    'rails_api',
    'webdav',
    'webdav_download',
    'websocket',
    'workbench1',
)

# Services polled by the health aggregator
HEALTH_CHECK_SERVICES = (
    'controller',
    'dispatch_cloud',
    'git_http',
    'keepbalance',
    'keepproxy',
    'keepstore',
    'rails_api',
    'webdav',
    'websocket',
    'workbench1',
)
