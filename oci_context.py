"""
OCI connection context

Resolves credentials the same way for every entry point (CLI, web) and
hands out fresh SDK clients scoped to the resolved config/signer pair.

Authentication priority order:
1. Instance Principal (OCI_USE_INSTANCE_PRINCIPAL=true)
2. Environment Variables (OCI_TENANCY_OCID, etc.)
3. Config File (~/.oci/config or OCI_CONFIG_FILE)
"""

import base64
import logging
import os

import oci
from oci._vendor.requests.utils import should_bypass_proxies

logger = logging.getLogger(__name__)

PROXY_ENV = 'GLOBAL_AGENT_HTTP_PROXY'
NO_PROXY_ENV = 'GLOBAL_AGENT_NO_PROXY'


def proxy_settings(environ=None):
    """Build a requests-style proxies mapping from the GLOBAL_AGENT_* variables.

    Returns None when no proxy is configured.
    """
    environ = os.environ if environ is None else environ
    proxy = environ.get(PROXY_ENV)
    if not proxy:
        return None
    proxies = {'http': proxy, 'https': proxy}
    no_proxy = environ.get(NO_PROXY_ENV)
    if no_proxy:
        proxies['no_proxy'] = no_proxy
    return proxies


class OciContext:
    """Explicit configuration value passed into every remote operation"""

    def __init__(self, config, signer=None, proxies=None):
        self.config = config
        self.signer = signer
        self.proxies = proxies

    @property
    def tenancy_id(self):
        tenancy = self.config.get('tenancy')
        if not tenancy and self.signer is not None:
            tenancy = getattr(self.signer, 'tenancy_id', None)
        return tenancy

    @property
    def region(self):
        return self.config.get('region')

    def bypasses_proxy(self, endpoint):
        """True when the endpoint host is listed in the no-proxy setting."""
        no_proxy = (self.proxies or {}).get('no_proxy')
        if not no_proxy or not endpoint:
            return False
        return should_bypass_proxies(endpoint, no_proxy=no_proxy)

    def client(self, client_class, **kwargs):
        """Create a new client of the given SDK class for this context.

        A client talks to a single service endpoint, so the proxy is either
        applied to its whole session or left off when the endpoint is exempt.
        """
        if self.signer is not None:
            kwargs.setdefault('signer', self.signer)
        client = client_class(self.config, **kwargs)
        if self.proxies:
            endpoint = getattr(client.base_client, 'endpoint', None)
            if self.bypasses_proxy(endpoint):
                logger.debug(f"Not proxying {endpoint}")
            else:
                client.base_client.session.proxies = {
                    scheme: url for scheme, url in self.proxies.items() if scheme != 'no_proxy'
                }
        return client


def _instance_principal_config():
    logger.info("Using OCI Instance Principal authentication")
    signer = oci.auth.signers.InstancePrincipalsSecurityTokenSigner()
    config = {
        'region': os.getenv('OCI_REGION', 'us-ashburn-1'),
        'tenancy': signer.tenancy_id
    }
    logger.info(f"Instance Principal authentication successful for tenancy: {signer.tenancy_id}")
    return config, signer


def _environment_config():
    logger.info("Using environment variables for authentication")
    private_key_env = os.getenv('OCI_PRIVATE_KEY')
    private_key_base64 = os.getenv('OCI_PRIVATE_KEY_BASE64')

    if not private_key_env and not private_key_base64:
        raise ValueError("OCI_PRIVATE_KEY or OCI_PRIVATE_KEY_BASE64 must be set")

    if private_key_base64:
        private_key_content = base64.b64decode(private_key_base64).decode('utf-8')
    else:
        # Escaped newlines come from single-line env files
        private_key_content = private_key_env.replace('\\n', '\n')

    config = {
        'user': os.getenv('OCI_USER_OCID'),
        'tenancy': os.getenv('OCI_TENANCY_OCID'),
        'fingerprint': os.getenv('OCI_FINGERPRINT'),
        'region': os.getenv('OCI_REGION'),
        'key_content': private_key_content
    }
    passphrase = os.getenv('OCI_PASSPHRASE')
    if passphrase:
        config['pass_phrase'] = passphrase

    oci.config.validate_config(config)

    signer = oci.signer.Signer(
        tenancy=config['tenancy'],
        user=config['user'],
        fingerprint=config['fingerprint'],
        private_key_content=config['key_content'],
        pass_phrase=config.get('pass_phrase')
    )
    logger.info(f"Environment variable authentication successful for tenancy: {config['tenancy']}")
    return config, signer


def _config_file_config(config_file, profile):
    logger.info(f"Using config file for authentication: {config_file} [{profile}]")
    config = oci.config.from_file(config_file, profile)

    if 'security_token_file' in config:
        # oci session authenticate
        token_file = os.path.expanduser(config['security_token_file'])
        with open(token_file, 'r') as f:
            token = f.read()
        private_key = oci.signer.load_private_key_from_file(config['key_file'])
        signer = oci.auth.signers.SecurityTokenSigner(token, private_key)
        logger.info("Using session token authentication from config file")
    else:
        signer = oci.signer.Signer(
            tenancy=config['tenancy'],
            user=config['user'],
            fingerprint=config['fingerprint'],
            private_key_file_location=config['key_file'],
            pass_phrase=config.get('pass_phrase')
        )
        logger.info("Using API key authentication from config file")
    return config, signer


def get_oci_config(profile='DEFAULT', config_file=None):
    """
    Load OCI configuration with multiple authentication methods.

    Returns:
        tuple: (config dict, signer object) or (None, None) on failure
    """
    if os.getenv('OCI_USE_INSTANCE_PRINCIPAL', '').lower() == 'true':
        try:
            return _instance_principal_config()
        except Exception as e:
            logger.error(f"Instance Principal authentication failed: {e}")
            logger.info("Falling back to environment variables or config file...")

    required_env_vars = ['OCI_TENANCY_OCID', 'OCI_USER_OCID', 'OCI_FINGERPRINT', 'OCI_REGION']
    if all(os.getenv(var) for var in required_env_vars):
        try:
            return _environment_config()
        except Exception as e:
            logger.error(f"Environment variable authentication failed: {e}")
            logger.info("Falling back to config file...")

    if config_file is None:
        config_file = os.environ.get('OCI_CONFIG_FILE', oci.config.DEFAULT_LOCATION)
    config_file = os.path.expanduser(config_file)

    try:
        return _config_file_config(config_file, profile)
    except (FileNotFoundError, oci.exceptions.ConfigFileNotFound):
        logger.error(f"Config file not found: {config_file}")
        logger.error("No authentication method available!")
        logger.error("Please provide credentials via:")
        logger.error("  1. Instance Principal (set OCI_USE_INSTANCE_PRINCIPAL=true)")
        logger.error("  2. Environment variables (set OCI_TENANCY_OCID, OCI_USER_OCID, etc.)")
        logger.error("  3. Config file (create ~/.oci/config)")
        return None, None
    except Exception as e:
        logger.error(f"Error loading OCI config from file: {e}")
        return None, None


def create_context(profile='DEFAULT', config_file=None, environ=None):
    """Resolve credentials and proxy settings into an OciContext, or None."""
    config, signer = get_oci_config(profile, config_file)
    if not config:
        return None
    proxies = proxy_settings(environ)
    if proxies:
        logger.info(f"Using HTTP proxy {proxies['https']}")
    return OciContext(config, signer, proxies)
