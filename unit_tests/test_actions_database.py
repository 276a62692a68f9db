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

from unittest.mock import patch, MagicMock

import database_actions
import database_utils

from test_utils import (
    CharmTestCase,
    memory_state,
)

TO_PATCH = [
    'action_fail',
    'action_set',
    'leader_get',
    'NodeState',
]


class DatabaseActionsTestCase(CharmTestCase):

    def setUp(self):
        super(DatabaseActionsTestCase, self).setUp(database_actions,
                                                   TO_PATCH)
        self.leader_get.side_effect = self.test_leader.get
        self.state = memory_state()
        self.NodeState.return_value = self.state

    def test_bootstrap_status(self):
        self.test_leader.set(founder='galera-database/0')
        self.state.ha_enabled = True
        self.state.database_bootstrapped = True
        self.state.revision = 2
        self.state.sst_auth = database_utils.SST_AUTH_PERMANENT
        database_actions.bootstrap_status([])
        self.action_set.assert_called_once_with({
            'bootstrapped': True,
            'sst-auth': 'permanent',
            'ha-enabled': True,
            'revision': 2,
            'founder': 'galera-database/0',
        })
        self.assertFalse(self.action_fail.called)

    def test_bootstrap_status_fresh_unit(self):
        database_actions.bootstrap_status([])
        self.action_set.assert_called_once_with({
            'bootstrapped': False,
            'sst-auth': 'transient',
            'ha-enabled': False,
            'revision': 0,
            'founder': '',
        })

    def test_bootstrap_status_failure(self):
        self.NodeState.side_effect = Exception('locked')
        database_actions.bootstrap_status([])
        self.action_fail.assert_called_once_with(
            'Cannot read database bootstrap state')
        self.assertIn('traceback', self.action_set.call_args[0][0])

    def test_main(self):
        bootstrap_status = MagicMock()
        with patch.dict(database_actions.ACTIONS,
                        {'bootstrap-status': bootstrap_status}):
            database_actions.main(['actions/bootstrap-status'])
        bootstrap_status.assert_called_once_with(['actions/bootstrap-status'])

    def test_main_unknown_action(self):
        self.assertEqual(database_actions.main(['actions/foo']),
                         'Action foo undefined')
