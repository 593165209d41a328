'''
Syncthing configuration: REST URI and API key of the local daemon

The config file is located in this order:
1. the "Configuration file" entry of `syncthing --paths`
2. $XDG_STATE_HOME/syncthing/config.xml
3. $XDG_CONFIG_HOME/syncthing/config.xml (deprecated location)

The daemon path table is fetched by the async query_paths(). exists() and
load() use its last answer and never spawn a process.
'''

import os
import re
import asyncio
import logging
from pathlib import Path
from typing import Optional, Dict, List


logger = logging.getLogger(__name__)

SERVICE_NAME = 'syncthing'
CONFIG_PATH_KEY = 'Configuration file'
CONFIG_FILE_NAME = 'config.xml'
# Seconds to wait for `syncthing --paths`
PATHS_TIMEOUT = 10

GUI_PATTERN = re.compile(
    r'<gui.*?tls="(true|false)".*?>.*?<address>(.*?)</address>.*?<apikey>(.*?)</apikey>.*?</gui>',
    re.DOTALL | re.IGNORECASE
)

SERVICE_UNIT = '''[Unit]
Description=Syncthing - Open Source Continuous File Synchronization
Documentation=man:syncthing(1)
StartLimitIntervalSec=60
StartLimitBurst=4

[Service]
ExecStart=/usr/bin/syncthing serve --no-browser --no-restart --logflags=0
Restart=on-failure
RestartSec=1
SuccessExitStatus=3 4
RestartForceExitStatus=3 4

# Hardening
SystemCallArchitectures=native
MemoryDenyWriteExecute=true
NoNewPrivileges=true

[Install]
WantedBy=default.target
'''


def _xdg_dir(variable: str, fallback: str) -> Path:
    value = os.environ.get(variable)
    if value:
        return Path(value)
    return Path.home() / fallback


def parse_paths(output: str) -> Dict[str, List[str]]:
    '''
    Parse the output of `syncthing --paths`

    Sections are separated by an empty line, each one is a "Key:" line
    followed by tab indented values.
    '''
    paths: Dict[str, List[str]] = {}
    for section in output.split('\n\n'):
        items = section.strip('\n').split(':\n\t')
        if len(items) == 2:
            paths[items[0].strip()] = [value.strip() for value in items[1].split('\n\t')]
    return paths


class Config:
    '''Resolves the daemon URI and API key, lazily on the first exists() call'''

    def __init__(self, executable: str = SERVICE_NAME,
                 state_dir: Optional[Path] = None,
                 config_dir: Optional[Path] = None,
                 unit_template: Optional[Path] = None):
        self.executable = executable
        self.state_dir = Path(state_dir) if state_dir else _xdg_dir('XDG_STATE_HOME', '.local/state')
        self.config_dir = Path(config_dir) if config_dir else _xdg_dir('XDG_CONFIG_HOME', '.config')
        self.unit_template = Path(unit_template) if unit_template else None
        self.clear()

    def clear(self):
        self.uri: Optional[str] = None
        self.api_key: Optional[str] = None
        self.file: Optional[Path] = None
        self.daemon_file: Optional[Path] = None
        self._exists: bool = False

    def destroy(self):
        self.clear()

    async def query_paths(self) -> Optional[Path]:
        '''Ask the daemon binary where its config file lives, used by the next load()'''
        self.daemon_file = None
        try:
            process = await asyncio.create_subprocess_exec(
                self.executable, '--paths',
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL
            )
        except OSError as e:
            logger.debug('Cannot query %s paths: %s', self.executable, e)
            return None

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), PATHS_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning('%s --paths did not answer', self.executable)
            process.kill()
            await process.wait()
            return None

        values = parse_paths(stdout.decode(errors='replace')).get(CONFIG_PATH_KEY)
        if values and values[0]:
            self.daemon_file = Path(values[0])
        return self.daemon_file

    def _locate(self) -> Optional[Path]:
        candidates = [
            self.daemon_file,
            self.state_dir / SERVICE_NAME / CONFIG_FILE_NAME,
            self.config_dir / SERVICE_NAME / CONFIG_FILE_NAME,
        ]
        for candidate in candidates:
            if candidate is not None and candidate.is_file():
                return candidate
        return None

    def load(self):
        self._exists = False
        self.file = self._locate()
        if self.file is None:
            logger.debug("Can't find config file")
            return

        try:
            content = self.file.read_text(encoding='utf-8', errors='replace')
        except OSError as e:
            logger.error('Cannot read config file %s: %s', self.file, e)
            return

        match = GUI_PATTERN.search(content)
        if not match:
            logger.error("Can't find gui xml node in config %s", self.file)
            return

        tls, address, api_key = match.groups()
        self.api_key = api_key.strip()
        self.uri = ('https' if tls.lower() == 'true' else 'http') + '://' + address.strip()
        self._exists = True
        logger.info('Found config %s, uri %s', self.file, self.uri)

    def exists(self) -> bool:
        if not self._exists:
            self.load()
        return self._exists

    def get_uri(self) -> Optional[str]:
        return self.uri

    def get_api_key(self) -> Optional[str]:
        return self.api_key

    def get_file(self) -> Optional[Path]:
        return self.file

    @property
    def service_file(self) -> Path:
        return self.config_dir / 'systemd' / 'user' / (SERVICE_NAME + '.service')

    def set_service(self, force: bool = False) -> bool:
        '''
        Install the user unit file, unless it already exists and force is not set

        Returns:
            True if the unit file was written
        '''
        target = self.service_file
        if target.exists() and not force:
            return False

        try:
            if self.unit_template is not None:
                content = self.unit_template.read_text(encoding='utf-8')
            else:
                content = SERVICE_UNIT
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding='utf-8')
        except OSError as e:
            logger.warning("Couldn't write systemd unit file %s: %s", target, e)
            return False

        logger.info('Systemd unit file written to %s', target)
        return True
