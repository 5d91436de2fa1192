import atexit
import io
import logging
import os
import shutil
import signal
import tempfile
from contextlib import asynccontextmanager
from typing import Dict, Optional

import aiohttp
import click
import yaml

from mirrorlib import constants, logutil, state
from mirrorlib.builder import ImageBuilder
from mirrorlib.config import MirrorConfig, load_config
from mirrorlib.registry import RegistryInspector
from mirrorlib.upstream import VersionSource


# mirror lets in-flight work unwind on SIGINT (Ctrl-C)
# but CI runners send a SIGTERM when cancelling a job.
def handle_sigterm(*_):
    raise KeyboardInterrupt()


signal.signal(signal.SIGTERM, handle_sigterm)


def remove_tmp_working_dir(runtime):
    if runtime.remove_tmp_working_dir:
        shutil.rmtree(runtime.working_dir)
    else:
        click.echo("Temporary working directory preserved by operation: %s" % runtime.working_dir)


# ============================================================================
# Runtime object definition
# ============================================================================


class Runtime(object):

    def __init__(self, **kwargs):
        # initialize defaults in case no value is given
        self.debug = False
        self.quiet = False
        self.working_dir = None
        self.config_path = None
        self.registry = None
        self.namespace = None
        self.window_size = None
        self.arches = ()
        self.use_qemu = None
        self.only_versions = None

        for key, val in kwargs.items():
            self.__dict__[key] = val

        self.remove_tmp_working_dir = False
        self.config: Optional[MirrorConfig] = None
        self.logger = logutil.getLogger()
        self.debug_log_path = None
        self.state_file = None
        self.state = dict(state.TEMPLATE_BASE_STATE)
        self.initialized = False

    def initialize(self):
        if self.initialized:
            return

        if self.working_dir is None:
            self.working_dir = tempfile.mkdtemp(".tmp", "mirror-")
            # This can be set to False by operations which want the working directory to be left around
            self.remove_tmp_working_dir = True
            atexit.register(remove_tmp_working_dir, self)
        else:
            self.working_dir = os.path.abspath(os.path.expanduser(self.working_dir))
            os.makedirs(self.working_dir, exist_ok=True)

        self.initialize_logging()
        self.init_state()

        overrides = {
            'registry': self.registry,
            'namespace': self.namespace,
            'window_size': self.window_size,
            'architectures': list(self.arches) or None,
            'use_qemu': self.use_qemu,
        }
        self.config = load_config(self.config_path, overrides)
        self.logger.debug("Working directory: %s", self.working_dir)
        self.initialized = True

    def initialize_logging(self):

        if self.initialized:
            return

        # Two flags control the output modes of the command:
        # --debug increases the log level to produce more detailed internal
        #         behavior logging
        # --quiet only shows warnings and errors on the console
        if self.debug:
            log_level = logging.DEBUG
        elif self.quiet:
            log_level = logging.WARN
        else:
            log_level = logging.INFO

        default_log_formatter = logging.Formatter('%(asctime)s %(levelname)s %(message)s')

        root_logger = logging.getLogger()
        root_logger.setLevel(logging.WARN)
        root_stream_handler = logging.StreamHandler()
        root_stream_handler.setFormatter(default_log_formatter)
        root_logger.addHandler(root_stream_handler)

        # Get a reference to the logger for mirror
        self.logger = logutil.getLogger()
        self.logger.propagate = False

        # levels will be set at the handler level. Make sure master level is low.
        self.logger.setLevel(logging.DEBUG)

        main_stream_handler = logging.StreamHandler()
        main_stream_handler.setFormatter(default_log_formatter)
        main_stream_handler.setLevel(log_level)
        self.logger.addHandler(main_stream_handler)

        self.debug_log_path = os.path.join(self.working_dir, "debug.log")
        debug_log_handler = logging.FileHandler(self.debug_log_path)
        # Add task information for debug log
        debug_log_handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s (%(thread)d) %(name)s %(message)s'))
        debug_log_handler.setLevel(logging.DEBUG)
        self.logger.addHandler(debug_log_handler)

    def init_state(self):
        self.state_file = os.path.join(self.working_dir, 'state.yaml')
        self.state = dict(state.TEMPLATE_BASE_STATE)

    def save_state(self):
        with io.open(self.state_file, 'w', encoding='utf-8') as f:
            yaml.safe_dump(self.state, f, default_flow_style=False)

    @property
    def tokens(self) -> Dict[str, str]:
        tokens = {}
        if os.environ.get(constants.GITHUB_TOKEN):
            tokens['github'] = os.environ[constants.GITHUB_TOKEN]
        if os.environ.get(constants.GITLAB_TOKEN):
            tokens['gitlab'] = os.environ[constants.GITLAB_TOKEN]
        return tokens

    @property
    def registry_token(self) -> Optional[str]:
        return os.environ.get(constants.REGISTRY_TOKEN) or os.environ.get(constants.GITHUB_TOKEN)

    @asynccontextmanager
    async def http_session(self):
        timeout = aiohttp.ClientTimeout(total=60)
        async with aiohttp.ClientSession(connector=aiohttp.TCPConnector(limit=32), timeout=timeout) as session:
            yield session

    def version_source(self, session: aiohttp.ClientSession) -> VersionSource:
        return VersionSource(session, fetch_size=self.config.fetch_size, tokens=self.tokens)

    def registry_inspector(self, session: aiohttp.ClientSession) -> RegistryInspector:
        return RegistryInspector(session, registry=self.config.registry, token=self.registry_token,
                                 max_parallel=self.config.max_parallel_probes)

    def image_builder(self) -> ImageBuilder:
        return ImageBuilder(self.working_dir)
