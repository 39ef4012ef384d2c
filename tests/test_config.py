import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from peerdrop.config import Config, load_config, DEFAULT_ICE_SERVERS


class ConfigTest(unittest.TestCase):

    def test_defaults(self):
        config = Config()
        self.assertEqual(config.port, 3001)
        self.assertEqual(config.chunk_size, 16384)
        self.assertEqual(config.connect_timeout, 10.0)
        self.assertEqual(config.ice_servers, DEFAULT_ICE_SERVERS)
        self.assertIsNot(config.ice_servers, DEFAULT_ICE_SERVERS)

    def test_file_round_trip(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / 'config.json'
            original = Config(port=4000, server_url='http://10.0.0.5:4000',
                              output_dir=Path('downloads'))
            original.save(path)

            loaded = Config.from_file(path)

        self.assertEqual(loaded.to_dict(), original.to_dict())

    def test_missing_file_gives_defaults(self):
        self.assertEqual(Config.from_file(Path('/nonexistent/config.json')).to_dict(),
                         Config().to_dict())

    def test_file_values_are_coerced(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / 'config.json'
            path.write_text(json.dumps({'port': '4000', 'connect_timeout': '2.5',
                                        'reconnect_attempts': '5'}))
            config = Config.from_file(path)

        self.assertEqual(config.port, 4000)
        self.assertEqual(config.connect_timeout, 2.5)
        self.assertEqual(config.reconnect_attempts, 5)

    def test_environment_overrides_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / 'config.json'
            path.write_text(json.dumps({'port': 4000, 'chunk_size': 8192}))

            env = {
                'PEERDROP_PORT': '5000',
                'PEERDROP_ICE_SERVERS': 'stun:a.example:3478, stun:b.example:3478',
            }
            with mock.patch.dict(os.environ, env):
                config = load_config(path)

        self.assertEqual(config.port, 5000)
        self.assertEqual(config.chunk_size, 8192)
        self.assertEqual(config.ice_servers, ['stun:a.example:3478', 'stun:b.example:3478'])


if __name__ == '__main__':
    unittest.main()
