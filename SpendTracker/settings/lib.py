"""Settings library for application and authentication configurations.

Provides:
    - Schema validation and enforcement for settings.json structure.
    - Loading, saving and reverting the settings and client_secret.json files.
    - Application paths for the provider session and the local session database.
"""

import json
import logging
import pathlib
import shutil
from typing import Dict, Any, Optional, List

from PySide6 import QtCore

from ..status import status

app_name: str = 'SpendTracker'

SETTINGS_SCHEMA: Dict[str, Any] = {
    'spreadsheet': {
        'type': dict,
        'required': True,
        'item_schema': {
            'title': {'type': str, 'required': True},
            'sheet': {'type': str, 'required': True},
        }
    },
    'auth': {
        'type': dict,
        'required': True,
        'item_schema': {
            'scopes': {'type': list, 'required': True},
            'silent_timeout': {'type': (int, float), 'required': True},
            'expiry_margin': {'type': int, 'required': True},
        }
    },
    'data': {
        'type': dict,
        'required': True,
        'item_schema': {
            'row_limit': {'type': int, 'required': True},
        }
    },
}


def _validate_section(section_name: str, section: Dict[str, Any], item_schema: Dict[str, Any]) -> None:
    """Validate the items of a settings section against its item schema.

    Args:
        section_name: Name of the section, used in error messages.
        section: The section data.
        item_schema: Mapping of item names to type and presence requirements.

    Raises:
        TypeError: If an item has the wrong type.
        ValueError: If a required item is missing or empty.
    """
    logging.debug(f'Validating "{section_name}" section.')
    for field, field_specs in item_schema.items():
        if field_specs['required'] and field not in section:
            msg = f'"{section_name}" missing "{field}".'
            logging.error(msg)
            raise ValueError(msg)
        if field not in section:
            continue

        value = section[field]
        # bool is an int subclass; never accept it for numeric fields
        if isinstance(value, bool) or not isinstance(value, field_specs['type']):
            msg = (
                f'"{section_name}" field "{field}" must be {field_specs["type"]}, '
                f'got {type(value)}.'
            )
            logging.error(msg)
            raise TypeError(msg)

        if isinstance(value, (str, list)) and not value:
            msg = f'"{section_name}" field "{field}" must not be empty.'
            logging.error(msg)
            raise ValueError(msg)
        if isinstance(value, (int, float)) and value <= 0:
            msg = f'"{section_name}" field "{field}" must be positive, got {value}.'
            logging.error(msg)
            raise ValueError(msg)


class ConfigPaths:
    """Manage application file paths and ensure default templates and directories exist.

    Paths live under Qt's writable ``AppDataLocation`` so tests can redirect them
    with :meth:`QtCore.QStandardPaths.setTestModeEnabled`.
    """

    def __init__(self) -> None:
        QtCore.QCoreApplication.setApplicationName(app_name)
        QtCore.QCoreApplication.setOrganizationName('')
        logging.debug(f'Setting application name: {app_name}')

        p = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
        app_data_dir = pathlib.Path(p)
        logging.debug(f'Using app data directory: {app_data_dir}')

        self.template_dir: pathlib.Path = pathlib.Path(__file__).parent.parent / 'config'
        self.client_secret_template: pathlib.Path = self.template_dir / 'client_secret.json.template'
        self.settings_template: pathlib.Path = self.template_dir / 'settings.json.template'

        self.config_dir: pathlib.Path = app_data_dir / 'config'
        self.auth_dir: pathlib.Path = self.config_dir / 'auth'
        self.db_dir: pathlib.Path = self.config_dir / 'db'

        self.client_secret_path: pathlib.Path = self.config_dir / 'client_secret.json'
        self.settings_path: pathlib.Path = self.config_dir / 'settings.json'
        self.creds_path: pathlib.Path = self.auth_dir / 'creds.json'
        self.db_path: pathlib.Path = self.db_dir / 'session.db'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Verify templates exist and prepare configuration directories and files.

        Raises:
            FileNotFoundError: If a required template file is missing.
        """
        logging.debug(f'Verifying required templates in {self.template_dir}')
        for template in (self.client_secret_template, self.settings_template):
            if not template.exists():
                msg: str = f'Missing template: {template}'
                logging.error(msg)
                raise FileNotFoundError(msg)

        for directory in (self.config_dir, self.auth_dir, self.db_dir):
            if not directory.exists():
                logging.debug(f'Creating directory: {directory}')
                directory.mkdir(parents=True, exist_ok=True)

        # Ensure valid configs exists even if we haven't yet set them up
        if not self.client_secret_path.exists():
            logging.debug(f'Copying default client_secret from template to {self.client_secret_path}')
            shutil.copy(self.client_secret_template, self.client_secret_path)
        if not self.settings_path.exists():
            logging.debug(f'Copying default settings from template to {self.settings_path}')
            shutil.copy(self.settings_template, self.settings_path)

    def revert_settings_to_template(self) -> None:
        """Restore settings.json from the default template file."""
        logging.debug(f'Reverting settings to template: {self.settings_template}')
        shutil.copy(self.settings_template, self.settings_path)

    def revert_client_secret_to_template(self) -> None:
        """Restore client_secret.json from the default template file."""
        logging.debug(f'Reverting client_secret to template: {self.client_secret_template}')
        shutil.copy(self.client_secret_template, self.client_secret_path)


class SettingsAPI(ConfigPaths):
    """
    Provides an interface to get/set/revert/save settings.json sections and client_secret.json.
    """
    required_client_secret_keys: List[str] = ['client_id', 'project_id', 'client_secret', 'auth_uri', 'token_uri']

    def __init__(self, settings_path: Optional[str] = None, client_secret_path: Optional[str] = None) -> None:
        """Initialize SettingsAPI and load settings and client_secret data.

        Args:
            settings_path: Optional path to a custom settings.json file.
            client_secret_path: Optional path to a custom client_secret.json file.
        """
        super().__init__()

        self.settings_path: pathlib.Path = pathlib.Path(settings_path) if settings_path else self.settings_path
        self.client_secret_path: pathlib.Path = (
            pathlib.Path(client_secret_path)
            if client_secret_path
            else self.client_secret_path
        )

        self.settings_data: Dict[str, Any] = {k: {} for k in SETTINGS_SCHEMA}
        self.client_secret_data: Dict[str, Any] = {}

        self.init_data()

    def init_data(self) -> None:
        """Reload settings and client_secret data.

        An invalid client secret is tolerated here: the template ships empty and
        authentication reports the problem when it is first needed.
        """
        self.load_settings()
        try:
            self.load_client_secret()
        except status.BaseStatusException as ex:
            logging.warning(f'Client secret not usable yet: {ex}')

    def load_settings(self) -> Dict[str, Any]:
        """Load settings.json from disk and validate against schema.

        Returns:
            The loaded settings data dictionary.

        Raises:
            status.ConfigInvalidException: If the file is missing, unparsable, or fails validation.
        """
        logging.debug(f'Loading settings from "{self.settings_path}"')
        if not self.settings_path.exists():
            raise status.ConfigInvalidException(f'Settings file not found: {self.settings_path}')

        try:
            with self.settings_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
            self.validate_settings_data(data)
        except (ValueError, TypeError) as ex:
            raise status.ConfigInvalidException(str(ex)) from ex

        self.settings_data = data
        return self.settings_data

    def load_client_secret(self) -> Dict[str, Any]:
        """Load client_secret.json from disk and validate required OAuth fields.

        Returns:
            The loaded client secret data dictionary.

        Raises:
            status.ClientSecretNotFoundException: If client_secret.json file is missing.
            status.ClientSecretInvalidException: If JSON parsing or required fields are missing.
        """
        logging.debug(f'Loading client_secret from "{self.client_secret_path}"')
        if not self.client_secret_path.exists():
            raise status.ClientSecretNotFoundException(str(self.client_secret_path))
        try:
            with self.client_secret_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
        except (ValueError, json.JSONDecodeError) as ex:
            raise status.ClientSecretInvalidException(str(ex)) from ex

        self.validate_client_secret(data)
        self.client_secret_data = data
        return self.client_secret_data

    def validate_client_secret(self, data: Optional[Dict[str, Any]] = None) -> str:
        """Validate that the client configuration contains required OAuth credentials.

        Args:
            data (dict, optional): Client secret data to validate. Defaults to loaded client_secret_data.

        Returns:
            str: Section key used ('installed' or 'web').

        Raises:
            status.ClientSecretInvalidException: If no valid section exists or required fields are missing or empty.
        """
        if data is None:
            data = self.client_secret_data

        key = next((k for k in ('installed', 'web') if k in data), None)
        if not key:
            raise status.ClientSecretInvalidException('Missing "installed" or "web" section in client_secret.')

        logging.debug(f'Found "{key}" section in client_secret.')

        config_section: Dict[str, Any] = data[key]
        missing: List[str] = [k for k in self.required_client_secret_keys if not config_section.get(k)]
        if missing:
            raise status.ClientSecretInvalidException(
                f'Missing required fields in the \'{key}\' section: {missing}.'
            )
        return key

    def validate_settings_data(self, data: Optional[Dict[str, Any]] = None) -> None:
        """Validate settings data against the defined SETTINGS_SCHEMA.

        Args:
            data (dict, optional): Settings data to validate. Defaults to self.settings_data.

        Raises:
            ValueError: If a required section or item is missing or out of range.
            TypeError: If a section or item has the wrong type.
        """
        if data is None:
            data = self.settings_data
        if not isinstance(data, dict) or not data:
            raise ValueError('Settings data is empty.')

        logging.debug('Validating settings data against schema.')
        for field, specs in SETTINGS_SCHEMA.items():
            if specs.get('required') and field not in data:
                raise ValueError(f'Missing required field: {field}')
            if field not in data:
                continue
            if not isinstance(data[field], specs['type']):
                raise TypeError(f'Field "{field}" must be {specs["type"]}, got {type(data[field])}.')
            _validate_section(field, data[field], specs['item_schema'])

        scopes = data['auth']['scopes']
        if not all(isinstance(s, str) and s for s in scopes):
            raise TypeError('All "auth" scopes must be non-empty strings.')

        logging.debug('Settings data is valid.')

    def get_section(self, section_name: str) -> Dict[str, Any]:
        """Retrieve a copy of configuration data for a settings or client_secret section.

        Args:
            section_name: Section name ('client_secret' or key from the settings schema).

        Returns:
            A copied dict of the requested section data.

        Raises:
            KeyError: If section_name is not in settings_data.
        """
        if section_name == 'client_secret':
            return self.client_secret_data.copy()

        return self.settings_data[section_name].copy()

    def set_section(self, section_name: str, new_data: Dict[str, Any]) -> None:
        """Replace and persist a configuration section.

        Args:
            section_name: Section to update ('client_secret' or settings key).
            new_data: New data dict for the section.

        Raises:
            ValueError: If section_name is unrecognized or the data fails validation.
            TypeError: If the data has the wrong types.
        """
        if section_name == 'client_secret':
            logging.debug('Setting entire client_secret data.')
            self.validate_client_secret(new_data)
            self.client_secret_data = new_data
            self.save_section('client_secret')
            return

        if section_name not in self.settings_data:
            msg: str = f'Unknown section_name for set: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        current_section_data: Dict[str, Any] = self.settings_data[section_name].copy()

        self.settings_data[section_name] = new_data
        try:
            self.validate_settings_data()
            self.save_section(section_name)
        except (ValueError, TypeError) as e:
            logging.error(f'Validation error on set_section("{section_name}"): {e}')
            self.settings_data[section_name] = current_section_data
            raise

    def revert_section(self, section_name: str) -> None:
        """Revert a configuration section to its template default and save.

        Args:
            section_name: Section to revert ('client_secret' or settings key).

        Raises:
            ValueError: If section_name is invalid.
        """
        if section_name == 'client_secret':
            logging.debug('Reverting client_secret to template.')
            self.revert_client_secret_to_template()
            self.client_secret_data = {}
            return

        if section_name not in self.settings_data:
            msg: str = f'Unknown section_name for revert: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.settings_template.open('r', encoding='utf-8') as f:
            template_data: Dict[str, Any] = json.load(f)

        self.settings_data[section_name] = template_data[section_name]
        self.save_section(section_name)

    def save_section(self, section_name: str) -> None:
        """Persist a single configuration section to its corresponding file.

        Args:
            section_name: The section to save ('client_secret' or settings key).

        Raises:
            ValueError: If section_name is not recognized.
        """
        if section_name == 'client_secret':
            logging.debug(f'Saving client_secret to "{self.client_secret_path}"')
            with self.client_secret_path.open('w', encoding='utf-8') as f:
                json.dump(self.client_secret_data, f, indent=4, ensure_ascii=False)
            return

        if section_name not in self.settings_data:
            msg: str = f'Unknown section_name for save: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.settings_path.open('r', encoding='utf-8') as f:
            original_data: Dict[str, Any] = json.load(f)

        new_data: Dict[str, Any] = original_data.copy()
        new_data[section_name] = self.settings_data[section_name]

        with self.settings_path.open('w', encoding='utf-8') as f:
            json.dump(new_data, f, indent=4, ensure_ascii=False)


settings: SettingsAPI = SettingsAPI()
