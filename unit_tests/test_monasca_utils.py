# Copyright 2016 Canonical Ltd
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#  http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import os
import shutil
import tempfile

import yaml

from unittest.mock import patch

import monasca_utils

from test_utils import (
    CharmTestCase,
)

TO_PATCH = [
    'config',
    'log',
    'related_units',
    'relation_get',
    'relation_ids',
    'unit_get',
    'service_restart',
    'write_file',
]


def _write_file(path, content, owner='root', group='root', perms=0o444):
    with open(path, 'w') as f:
        f.write(content)


class TestMonascaUtils(CharmTestCase):

    def setUp(self):
        super(TestMonascaUtils, self).setUp(monasca_utils, TO_PATCH)
        self.config.side_effect = self.test_config.get
        self.relation_ids.side_effect = self.test_relation.ids
        self.related_units.side_effect = self.test_relation.units
        self.relation_get.side_effect = self.test_relation.get
        self.unit_get.return_value = '10.0.0.10'
        self.write_file.side_effect = _write_file
        self.tmpdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmpdir)
        self.conf = os.path.join(self.tmpdir, 'http_check.yaml')

    def monasca_related(self, api_url='http://10.0.0.50:8070/v2.0'):
        settings = {}
        if api_url:
            settings['monasca-api-url'] = api_url
        self.test_relation.set({
            'monasca-agent:5': {'monasca-agent/0': settings},
        })

    def load(self):
        with open(self.conf) as f:
            return yaml.safe_load(f)

    def test_monasca_server_available(self):
        self.assertFalse(monasca_utils.monasca_server_available())
        self.monasca_related(api_url=None)
        self.assertFalse(monasca_utils.monasca_server_available())
        self.monasca_related()
        self.assertTrue(monasca_utils.monasca_server_available())

    def test_cinder_api_monitor_url(self):
        self.assertEqual(monasca_utils.cinder_api_monitor_url(),
                         'http://10.0.0.10:8776/')
        self.test_config.set('cinder-api-bind-host', '192.168.1.5')
        self.test_config.set('cinder-api-protocol', 'https')
        self.assertEqual(monasca_utils.cinder_api_monitor_url(),
                         'https://192.168.1.5:8776/')

    def test_load_http_check_missing(self):
        self.assertEqual(monasca_utils.load_http_check(self.conf),
                         {'init_config': None, 'instances': []})

    def test_register_http_check(self):
        self.assertTrue(monasca_utils.register_http_check(
            'volume-api', 'http://10.0.0.10:8776/', 'cinder-controller',
            dimensions={'service': 'volume-api'}, match_pattern='.*v3.*',
            path=self.conf))
        self.assertEqual(self.load()['instances'], [{
            'name': 'volume-api',
            'url': 'http://10.0.0.10:8776/',
            'built_by': 'cinder-controller',
            'timeout': 10,
            'dimensions': {'service': 'volume-api'},
            'match_pattern': '.*v3.*',
        }])

    def test_register_http_check_unchanged(self):
        for _ in range(2):
            changed = monasca_utils.register_http_check(
                'volume-api', 'http://10.0.0.10:8776/', 'cinder-controller',
                path=self.conf)
        self.assertFalse(changed)
        self.assertEqual(self.write_file.call_count, 1)
        self.assertEqual(len(self.load()['instances']), 1)

    def test_register_http_check_keeps_other_owners(self):
        _write_file(self.conf, yaml.safe_dump({
            'init_config': None,
            'instances': [
                {'name': 'keystone-api', 'url': 'http://ks:5000/',
                 'built_by': 'keystone-server'},
                {'name': 'volume-api', 'url': 'http://old:8776/',
                 'built_by': 'cinder-controller'},
            ]}))
        monasca_utils.register_http_check(
            'volume-api', 'http://10.0.0.10:8776/', 'cinder-controller',
            path=self.conf)
        instances = self.load()['instances']
        self.assertEqual([i['name'] for i in instances],
                         ['keystone-api', 'volume-api'])
        self.assertEqual(instances[1]['url'], 'http://10.0.0.10:8776/')

    def test_register_http_check_unchanged_not_last(self):
        _write_file(self.conf, yaml.safe_dump({
            'init_config': None,
            'instances': [
                {'name': 'volume-api', 'url': 'http://10.0.0.10:8776/',
                 'built_by': 'cinder-controller', 'timeout': 10,
                 'dimensions': {'service': 'volume-api'}},
                {'name': 'keystone-api', 'url': 'http://ks:5000/',
                 'built_by': 'keystone-server'},
            ]}))
        self.assertFalse(monasca_utils.register_http_check(
            'volume-api', 'http://10.0.0.10:8776/', 'cinder-controller',
            dimensions={'service': 'volume-api'}, path=self.conf))
        self.assertFalse(self.write_file.called)

    def test_register_http_check_replaced_in_place(self):
        _write_file(self.conf, yaml.safe_dump({
            'init_config': None,
            'instances': [
                {'name': 'volume-api', 'url': 'http://old:8776/',
                 'built_by': 'cinder-controller'},
                {'name': 'keystone-api', 'url': 'http://ks:5000/',
                 'built_by': 'keystone-server'},
            ]}))
        self.assertTrue(monasca_utils.register_http_check(
            'volume-api', 'http://10.0.0.10:8776/', 'cinder-controller',
            path=self.conf))
        instances = self.load()['instances']
        self.assertEqual([i['name'] for i in instances],
                         ['volume-api', 'keystone-api'])
        self.assertEqual(instances[0]['url'], 'http://10.0.0.10:8776/')

    @patch.object(monasca_utils, 'register_http_check')
    def test_update_cinder_api_check_disabled(self, register):
        self.monasca_related()
        self.assertFalse(monasca_utils.update_cinder_api_check())
        self.assertFalse(register.called)

    @patch.object(monasca_utils, 'register_http_check')
    def test_update_cinder_api_check_no_server(self, register):
        self.test_config.set('monitor-cinder-api', True)
        self.monasca_related(api_url=None)
        self.assertFalse(monasca_utils.update_cinder_api_check())
        self.assertFalse(register.called)

    @patch.object(monasca_utils, 'register_http_check')
    def test_update_cinder_api_check(self, register):
        self.test_config.set('monitor-cinder-api', True)
        self.monasca_related()
        register.return_value = True
        self.assertTrue(monasca_utils.update_cinder_api_check())
        register.assert_called_once_with(
            'volume-api', 'http://10.0.0.10:8776/', 'cinder-controller',
            dimensions={'service': 'volume-api'}, match_pattern='.*v3.*')
        self.service_restart.assert_called_once_with('monasca-agent')

    @patch.object(monasca_utils, 'register_http_check')
    def test_update_cinder_api_check_unchanged(self, register):
        self.test_config.set('monitor-cinder-api', True)
        self.monasca_related()
        register.return_value = False
        self.assertFalse(monasca_utils.update_cinder_api_check())
        self.assertFalse(self.service_restart.called)
