"""Settings library for the sync engine configuration.

Provides:
    - Schema validation and enforcement for the sync.json structure.
    - Loading, saving, reverting, and managing application settings.
    - Application paths for the settings file, credentials and the local store.
"""

import json
import logging
import pathlib
import shutil
from typing import Dict, Any, Optional, List

from PySide6 import QtCore

from ..status import status

app_name: str = 'ExpenseSync'

PREFERENCE_KEYS: List[str] = [
    'sync_enabled',
    'currency',
]

SYNC_SCHEMA: Dict[str, Any] = {
    'remote': {
        'type': dict,
        'required': True,
        'item_schema': {
            'project_id': {'type': str, 'required': True},
            'database': {'type': str, 'required': True},
            'timeout': {'type': int, 'required': True, 'min': 1},
            'num_retries': {'type': int, 'required': True, 'min': 0},
        }
    },
    'preferences': {
        'type': dict,
        'required': True,
        'item_schema': {
            'sync_enabled': {'type': bool, 'required': True},
            'currency': {'type': str, 'required': True},
        }
    },
}


def _validate_section(section_name: str, section: Dict[str, Any], item_schema: Dict[str, Any]) -> None:
    """Validate a settings section against its item schema.

    Args:
        section_name: Name of the section, used in error messages.
        section: The section data.
        item_schema: Dict describing required fields, types and bounds.

    Raises:
        TypeError: If the section is not a dict or a field has the wrong type.
        ValueError: If a required field is missing or a value is out of bounds.
    """
    logging.debug(f'Validating "{section_name}" section.')
    if not isinstance(section, dict):
        msg: str = f'"{section_name}" must be a dict.'
        logging.error(msg)
        raise TypeError(msg)

    for field, field_specs in item_schema.items():
        if field_specs['required'] and field not in section:
            msg = f'Section "{section_name}" missing "{field}".'
            logging.error(msg)
            raise ValueError(msg)
        if field not in section:
            continue

        value = section[field]
        # bool is a subclass of int, but a flag is never a valid count
        if field_specs['type'] is int and isinstance(value, bool):
            msg = f'Section "{section_name}" field "{field}" must be int, got bool.'
            logging.error(msg)
            raise TypeError(msg)
        if not isinstance(value, field_specs['type']):
            msg = (
                f'Section "{section_name}" field "{field}" must be {field_specs["type"]}, '
                f'got {type(value)}.'
            )
            logging.error(msg)
            raise TypeError(msg)
        if 'min' in field_specs and value < field_specs['min']:
            msg = f'Section "{section_name}" field "{field}" must be >= {field_specs["min"]}, got {value}.'
            logging.error(msg)
            raise ValueError(msg)


class ConfigPaths:
    """Manage application file paths and ensure the default template and directories exist.

    This class initializes paths for the settings template, the user settings file,
    the credentials file and the local store database.
    """

    def __init__(self) -> None:
        QtCore.QCoreApplication.setApplicationName(app_name)
        QtCore.QCoreApplication.setOrganizationName('')
        logging.debug(f'Setting application name: {app_name}')

        p = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
        app_data_dir = pathlib.Path(p)
        logging.debug(f'Using app data directory: {app_data_dir}')

        self.template_dir: pathlib.Path = pathlib.Path(__file__).parent.parent / 'config'
        self.settings_template: pathlib.Path = self.template_dir / 'sync.json.template'

        self.config_dir: pathlib.Path = app_data_dir / 'config'
        self.auth_dir: pathlib.Path = self.config_dir / 'auth'
        self.db_dir: pathlib.Path = self.config_dir / 'db'

        self.settings_path: pathlib.Path = self.config_dir / 'sync.json'
        self.client_secret_path: pathlib.Path = self.auth_dir / 'client_secret.json'
        self.creds_path: pathlib.Path = self.auth_dir / 'creds.json'
        self.db_path: pathlib.Path = self.db_dir / 'store.db'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Verify the template exists and prepare configuration directories and files.

        Raises:
            FileNotFoundError: If the settings template is missing.
        """
        logging.debug(f'Verifying required templates in {self.template_dir}')
        if not self.settings_template.exists():
            msg: str = f'Missing settings template: {self.settings_template}'
            logging.error(msg)
            raise FileNotFoundError(msg)

        for directory in (self.config_dir, self.auth_dir, self.db_dir):
            if not directory.exists():
                logging.debug(f'Creating directory: {directory}')
                directory.mkdir(parents=True, exist_ok=True)

        if not self.settings_path.exists():
            logging.debug(f'Copying default settings from template to {self.settings_path}')
            shutil.copy(self.settings_template, self.settings_path)

    def revert_settings_to_template(self) -> None:
        """Restore sync.json from the default template file."""
        logging.debug(f'Reverting settings to template: {self.settings_template}')
        shutil.copy(self.settings_template, self.settings_path)


class SettingsAPI(ConfigPaths):
    """
    Provides an interface to get/set/revert/save sync.json sections.

    Preferences are also exposed with dictionary-style access, e.g. ``settings['sync_enabled']``.
    """

    def __init__(self, settings_path: Optional[str] = None) -> None:
        """Initialize SettingsAPI and load the settings data.

        Args:
            settings_path: Optional path to a custom sync.json file.
        """
        super().__init__()

        self.settings_path: pathlib.Path = pathlib.Path(settings_path) if settings_path else self.settings_path
        self._signals_blocked: bool = False

        self.data: Dict[str, Any] = {k: {} for k in SYNC_SCHEMA}
        self.load()

    def __getitem__(self, key: str) -> Any:
        """Retrieve a preference value.

        Raises:
            KeyError: If key is not a known preference.
        """
        if key not in PREFERENCE_KEYS:
            raise KeyError(f'Invalid preference key: {key}, must be one of {PREFERENCE_KEYS}')
        return self.data['preferences'].get(key)

    def __setitem__(self, key: str, value: Any) -> None:
        """Assign a preference value, persist it and emit ``preferenceChanged``.

        Raises:
            KeyError: If key is not a known preference.
            TypeError: If the value does not match the schema type.
        """
        if key not in PREFERENCE_KEYS:
            raise KeyError(f'Invalid preference key: {key}, must be one of {PREFERENCE_KEYS}')

        _type = SYNC_SCHEMA['preferences']['item_schema'][key]['type']
        if not isinstance(value, _type):
            msg = f'Preference "{key}" must be {_type}, got {type(value)}.'
            logging.error(msg)
            raise TypeError(msg)

        previous = self.data['preferences'].get(key)
        self.data['preferences'][key] = value
        self.save_section('preferences')

        if self._signals_blocked or previous == value:
            return

        from ..core.signals import signals
        signals.preferenceChanged.emit(key, value)

    @property
    def sync_enabled(self) -> bool:
        """Whether the user allows syncing with the remote store."""
        return bool(self['sync_enabled'])

    def block_signals(self, v: bool) -> None:
        """Enable or disable emission of configuration change signals."""
        self._signals_blocked = v

    def load(self) -> Dict[str, Any]:
        """Load sync.json from disk and validate against the schema.

        Returns:
            The loaded settings dictionary.

        Raises:
            status.SettingsNotFoundException: If sync.json is missing.
            status.SettingsInvalidException: If JSON parsing or validation fails.
        """
        logging.debug(f'Loading settings from "{self.settings_path}"')
        if not self.settings_path.exists():
            raise status.SettingsNotFoundException

        try:
            with self.settings_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
            self.validate(data)
        except (ValueError, TypeError) as ex:
            raise status.SettingsInvalidException(str(ex)) from ex

        self.data = data
        return self.data

    def validate(self, data: Dict[str, Any] = None) -> None:
        """Validate settings data against SYNC_SCHEMA.

        Args:
            data (dict, optional): Data to validate. Defaults to the loaded data.

        Raises:
            ValueError: If a required section is missing.
            TypeError: If a section or field has the wrong type.
        """
        if data is None:
            data = self.data
        if not isinstance(data, dict):
            raise TypeError('Settings data must be a dict.')

        for section_name, specs in SYNC_SCHEMA.items():
            if specs.get('required') and section_name not in data:
                raise ValueError(f'Missing required section: {section_name}')
            if section_name not in data:
                continue
            _validate_section(section_name, data[section_name], specs['item_schema'])

        logging.debug('Settings data is valid.')

    def get_section(self, section_name: str) -> Dict[str, Any]:
        """Retrieve a copy of a settings section.

        Raises:
            KeyError: If section_name is unknown.
        """
        return self.data[section_name].copy()

    def set_section(self, section_name: str, new_data: Dict[str, Any]) -> None:
        """Replace, validate and persist a settings section.

        The previous section is restored if validation fails.

        Raises:
            ValueError: If section_name is unknown or the data is invalid.
            TypeError: If the data has the wrong types.
        """
        if section_name not in SYNC_SCHEMA:
            msg: str = f'Unknown section_name for set: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        current_section_data: Dict[str, Any] = self.data[section_name].copy()
        self.data[section_name] = new_data
        try:
            self.validate()
        except (ValueError, TypeError) as e:
            logging.error(f'Validation error on set_section("{section_name}"): {e}')
            self.data[section_name] = current_section_data
            raise

        self.save_section(section_name)
        self._emit_section_changed(section_name, current_section_data)

    def revert_section(self, section_name: str) -> None:
        """Revert a settings section to its template default and save.

        Raises:
            ValueError: If section_name is unknown.
        """
        if section_name not in SYNC_SCHEMA:
            msg: str = f'Unknown section_name for revert: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.settings_template.open('r', encoding='utf-8') as f:
            template_data: Dict[str, Any] = json.load(f)

        current_section_data = self.data[section_name].copy()
        self.data[section_name] = template_data[section_name]
        self.save_section(section_name)
        self._emit_section_changed(section_name, current_section_data)

    def save_section(self, section_name: str) -> None:
        """Persist a single settings section to sync.json.

        Raises:
            ValueError: If section_name is unknown.
        """
        if section_name not in SYNC_SCHEMA:
            msg: str = f'Unknown section_name for save: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.settings_path.open('r', encoding='utf-8') as f:
            original_data: Dict[str, Any] = json.load(f)

        new_data: Dict[str, Any] = original_data.copy()
        new_data[section_name] = self.data[section_name]

        with self.settings_path.open('w', encoding='utf-8') as f:
            json.dump(new_data, f, indent=4, ensure_ascii=False)

    def _emit_section_changed(self, section_name: str, previous: Dict[str, Any]) -> None:
        if self._signals_blocked:
            return

        from ..core.signals import signals
        signals.configSectionChanged.emit(section_name)

        if section_name != 'preferences':
            return
        for key, value in self.data['preferences'].items():
            if previous.get(key) != value:
                signals.preferenceChanged.emit(key, value)


settings: SettingsAPI = SettingsAPI()
