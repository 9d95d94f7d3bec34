"""
Configuration file handling.

The configuration is a JSON file deep-merged over ``create_default_config()``,
so a user file only needs the values it changes.
"""

import getpass
import json
import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional

import mysql.connector

DEFAULT_CONFIG_FILE = "wp_kraken_config.json"

API_KEY_PATTERN = re.compile(r'^[a-f0-9]{32}$', re.IGNORECASE)
API_SECRET_PATTERN = re.compile(r'^[a-f0-9]{40}$', re.IGNORECASE)

PRESERVE_META_FIELDS = ('date', 'copyright', 'geotag', 'orientation', 'profile')

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Configuration file missing, unreadable or invalid."""


def create_default_config() -> Dict:
    """Default configuration"""
    return {
        "wordpress_path": "/var/www/html",
        "database": {
            "host": "localhost",
            "port": 3306,
            "user": "wordpress",
            "password": "",
            "database": "wordpress",
            "table_prefix": None
        },
        "kraken": {
            "api_key": "",
            "api_secret": "",
            "timeout": 300
        },
        "optimization": {
            "api_lossy": "lossy",
            "auto_optimize": True,
            "optimize_main_image": True,
            "preserve_meta_date": False,
            "preserve_meta_copyright": False,
            "preserve_meta_geotag": False,
            "preserve_meta_orientation": False,
            "preserve_meta_profile": False,
            "chroma": "4:2:0",
            "auto_orient": True,
            "resize_width": 0,
            "resize_height": 0,
            "jpeg_quality": 0,
            "sizes_to_optimize": ["thumbnail", "medium", "medium_large", "large"]
        },
        "cli": {
            "lossy": False,
            "compare": "md4",
            "types": "gif, jpeg, png, svg"
        },
        "logging": {
            "level": "INFO",
            "directory": "logs"
        }
    }


def deep_merge(base: Dict, override: Dict) -> Dict:
    """Deep merge two dictionaries"""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(config_file: str = DEFAULT_CONFIG_FILE) -> Dict:
    """Load the configuration file merged over the defaults.

    A missing file yields the defaults; a file that is not valid JSON
    raises ``ConfigError``.
    """
    default_config = create_default_config()

    if not os.path.exists(config_file):
        logger.warning(f"Configuration file not found: {config_file}, using defaults")
        return default_config

    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            user_config = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in configuration file {config_file}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file {config_file}: {e}") from e

    if not isinstance(user_config, dict):
        raise ConfigError(f"Configuration file {config_file} must contain a JSON object")

    logger.info(f"Configuration loaded from {config_file}")
    return deep_merge(default_config, user_config)


def save_config(config: Dict, config_file: str = DEFAULT_CONFIG_FILE):
    with open(config_file, 'w', encoding='utf-8') as f:
        json.dump(config, f, indent=2)
    logger.info(f"Configuration saved to {config_file}")


def uploads_path(config: Dict) -> Path:
    return Path(config['wordpress_path']) / "wp-content" / "uploads"


def valid_credentials(api_key: Optional[str], api_secret: Optional[str]) -> bool:
    """Check the lexical format of a Kraken key/secret pair."""
    if not api_key or not api_secret:
        return False
    return bool(API_KEY_PATTERN.match(api_key) and API_SECRET_PATTERN.match(api_secret))


def validate_wordpress_path(wp_path: str) -> bool:
    """Validate WordPress installation path"""
    wp_path_obj = Path(wp_path)

    if not wp_path_obj.exists():
        return False

    if not (wp_path_obj / "wp-config.php").exists():
        return False

    return (wp_path_obj / "wp-content" / "uploads").exists()


def check_database_connection(db_config: Dict) -> bool:
    """Test database connection"""
    try:
        connection = mysql.connector.connect(
            host=db_config['host'],
            port=db_config['port'],
            user=db_config['user'],
            password=db_config['password'],
            database=db_config['database'],
            connection_timeout=10
        )
        connected = connection.is_connected()
        connection.close()
        return connected
    except mysql.connector.Error as e:
        logger.error(f"Database connection error: {e}")
        return False


def validate_config(config: Dict, check_database: bool = True) -> List[str]:
    """Return a list of configuration problems; empty when valid."""
    issues = []

    if not validate_wordpress_path(config.get('wordpress_path', '')):
        issues.append(f"Invalid WordPress path: {config.get('wordpress_path') or 'Not specified'}")

    kraken = config.get('kraken', {})
    if not kraken.get('api_key') or not kraken.get('api_secret'):
        issues.append("Kraken API credentials not set")
    elif not valid_credentials(kraken['api_key'], kraken['api_secret']):
        issues.append("Kraken API credentials are malformed (expected 32/40 hex characters)")

    optimization = config.get('optimization', {})
    if optimization.get('api_lossy') not in ('lossy', 'lossless'):
        issues.append(f"Invalid api_lossy: {optimization.get('api_lossy')} (must be lossy or lossless)")

    quality = optimization.get('jpeg_quality') or 0
    if not isinstance(quality, int) or not 0 <= quality <= 100:
        issues.append(f"Invalid jpeg_quality: {quality} (must be 0-100)")

    for key in ('resize_width', 'resize_height'):
        value = optimization.get(key) or 0
        if not isinstance(value, int) or value < 0:
            issues.append(f"Invalid {key}: {value}")

    if check_database and not check_database_connection(config.get('database', {})):
        issues.append("Database connection failed")

    return issues


def _ask(prompt: str, default) -> str:
    value = input(f"{prompt} [{default}]: ").strip()
    return value or str(default)


def _ask_bool(prompt: str, default: bool) -> bool:
    value = input(f"{prompt} ({'Y/n' if default else 'y/N'}): ").strip().lower()
    if not value:
        return default
    return value == 'y'


def interactive_setup(config_file: str = DEFAULT_CONFIG_FILE) -> bool:
    """Interactive configuration setup"""
    print("\n🔧 Interactive Configuration Setup")
    print("=" * 40)
    print("Press Enter to use default values shown in [brackets].\n")

    config = create_default_config()
    if os.path.exists(config_file):
        try:
            config = load_config(config_file)
        except ConfigError as e:
            print(f"⚠️  Ignoring existing configuration: {e}")

    print("📁 WordPress Installation")
    print("-" * 25)
    config['wordpress_path'] = _ask("WordPress path", config['wordpress_path'])
    if not validate_wordpress_path(config['wordpress_path']):
        print(f"⚠️  Warning: WordPress installation not found at {config['wordpress_path']}")
        if not _ask_bool("Continue anyway?", False):
            print("Setup cancelled.")
            return False

    print("\n🗄️  Database Configuration")
    print("-" * 26)
    db = config['database']
    db['host'] = _ask("Database host", db['host'])
    try:
        db['port'] = int(_ask("Database port", db['port']))
    except ValueError:
        print("⚠️  Invalid port number, using 3306")
        db['port'] = 3306
    db['database'] = _ask("Database name", db['database'])
    db['user'] = _ask("Database user", db['user'])
    print("Database password (input will be hidden):")
    password = getpass.getpass("Password: ")
    if password:
        db['password'] = password

    if check_database_connection(db):
        print("✅ Database connection successful!")
    else:
        print("❌ Database connection failed!")
        if not _ask_bool("Continue with current settings?", False):
            print("Setup cancelled.")
            return False

    print("\n🔑 Kraken API Credentials")
    print("-" * 25)
    kraken = config['kraken']
    kraken['api_key'] = _ask("API key", kraken['api_key'] or "")
    secret = getpass.getpass("API secret (hidden): ")
    if secret:
        kraken['api_secret'] = secret.strip()
    if not valid_credentials(kraken['api_key'], kraken['api_secret']):
        print("⚠️  Credentials do not look like a Kraken key/secret pair")

    print("\n🖼️  Optimization Settings")
    print("-" * 25)
    optimization = config['optimization']
    lossy = _ask_bool("Use lossy compression?", optimization['api_lossy'] == 'lossy')
    optimization['api_lossy'] = 'lossy' if lossy else 'lossless'
    optimization['auto_optimize'] = _ask_bool("Optimize on upload?", optimization['auto_optimize'])
    try:
        quality = int(_ask("JPEG quality (0 = Kraken default, 1-100)", optimization['jpeg_quality']))
        if 0 <= quality <= 100:
            optimization['jpeg_quality'] = quality
        else:
            print("⚠️  Quality must be between 0-100, keeping current value")
    except ValueError:
        print("⚠️  Invalid quality value, keeping current value")

    print(f"\n💾 Saving configuration to {config_file}")
    try:
        save_config(config, config_file)
    except OSError as e:
        print(f"❌ Failed to save configuration: {e}")
        return False

    print("✅ Configuration saved successfully!")
    print(f"\n📋 Configuration Summary")
    print("-" * 24)
    print(f"WordPress Path: {config['wordpress_path']}")
    print(f"Database: {db['user']}@{db['host']}/{db['database']}")
    print(f"Compression: {optimization['api_lossy']}")
    print(f"Optimize on upload: {'Yes' if optimization['auto_optimize'] else 'No'}")
    return True
