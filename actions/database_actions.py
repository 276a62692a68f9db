#!/usr/bin/env python3
#
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
import sys
import traceback


_path = os.path.dirname(os.path.realpath(__file__))
_hooks = os.path.abspath(os.path.join(_path, '../hooks'))
_root = os.path.abspath(os.path.join(_path, '..'))


def _add_path(path):
    if path not in sys.path:
        sys.path.insert(1, path)


_add_path(_hooks)
_add_path(_root)

from charmhelpers.core.hookenv import (
    action_fail,
    action_set,
    leader_get,
)

from database_utils import (
    NodeState,
    FOUNDER_KEY,
)


def bootstrap_status(args):
    """Report the bootstrap and SST credential state of this unit."""
    try:
        state = NodeState()
        action_set({
            'bootstrapped': state.database_bootstrapped,
            'sst-auth': state.sst_auth,
            'ha-enabled': state.ha_enabled,
            'revision': state.revision,
            'founder': leader_get(FOUNDER_KEY) or '',
        })
    except Exception:
        action_set({'traceback': traceback.format_exc()})
        action_fail('Cannot read database bootstrap state')


ACTIONS = {
    'bootstrap-status': bootstrap_status,
}


def main(args):
    action_name = os.path.basename(args[0])
    try:
        action = ACTIONS[action_name]
    except KeyError:
        return 'Action {} undefined'.format(action_name)
    action(args)


if __name__ == '__main__':
    sys.exit(main(sys.argv))
