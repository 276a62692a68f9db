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
import socket
import sys

_path = os.path.dirname(os.path.realpath(__file__))
_root = os.path.abspath(os.path.join(_path, '..'))


def _add_path(path):
    if path not in sys.path:
        sys.path.insert(1, path)


_add_path(_root)


from database_utils import (
    assess_status,
    converge,
    determine_packages,
    juju_log,
    pin_founder,
    seed_passwords,
)

from monasca_utils import update_cinder_api_check

from charmhelpers.core.hookenv import (
    Hooks,
    is_leader,
    log,
    relation_ids,
    relation_set,
    status_set,
    unit_get,
    UnregisteredHookError,
)

from charmhelpers.fetch import (
    apt_install,
    apt_update,
    filter_installed_packages,
)

hooks = Hooks()


@hooks.hook('install')
def install():
    status_set('maintenance', 'Installing apt packages')
    apt_update(fatal=True)
    apt_install(determine_packages(), fatal=True)


@hooks.hook('config-changed')
def config_changed():
    # packages for HA may be needed when ha-enabled was switched on
    apt_install(filter_installed_packages(determine_packages()), fatal=True)

    if is_leader():
        seed_passwords()
        pin_founder()

    for rid in relation_ids('cluster'):
        cluster_joined(relation_id=rid)

    converge()
    update_monasca_checks()


@hooks.hook('leader-elected')
def leader_elected():
    seed_passwords()
    pin_founder()
    converge()


@hooks.hook('leader-settings-changed')
def leader_settings_changed():
    '''Re-run configuration once the leader has seeded passwords'''
    converge()


@hooks.hook('cluster-relation-joined')
def cluster_joined(relation_id=None):
    settings = {
        'hostname': socket.gethostname(),
        'private-address': unit_get('private-address'),
    }
    relation_set(relation_id=relation_id, relation_settings=settings)


@hooks.hook('cluster-relation-changed',
            'cluster-relation-departed')
def cluster_changed():
    if not converge():
        juju_log('Database configuration incomplete, waiting on peers')


@hooks.hook('monasca-agent-relation-joined',
            'monasca-agent-relation-changed')
def update_monasca_checks():
    update_cinder_api_check()


@hooks.hook('upgrade-charm')
def upgrade_charm():
    apt_install(filter_installed_packages(determine_packages()),
                fatal=True)
    if is_leader():
        seed_passwords()
        pin_founder()
    converge()


@hooks.hook('update-status')
def update_status():
    log('Updating status.')


if __name__ == '__main__':
    try:
        hooks.execute(sys.argv)
    except UnregisteredHookError as e:
        juju_log('Unknown hook {} - skipping.'.format(e))
    assess_status()
