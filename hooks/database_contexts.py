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

from charmhelpers.core.hookenv import (
    config,
    leader_get,
    unit_get,
)

from charmhelpers.contrib.openstack.context import (
    OSContextGenerator,
)

GALERA_PROVIDER = '/usr/lib/galera/libgalera_smm.so'


class MySQLConfigContext(OSContextGenerator):
    """Context for the OpenStack tuned server settings in openstack.cnf."""

    def __init__(self, state):
        self.state = state

    def __call__(self):
        # late import to work around circular dependency
        from database_utils import BIND_ADDRESS_KEY
        return {
            'bind_address': (self.state.get(BIND_ADDRESS_KEY) or
                             config('bind-address') or
                             unit_get('private-address')),
            'tmpdir': config('tmpdir'),
            'max_connections': config('max-connections'),
            'innodb_buffer_pool_size': config('innodb-buffer-pool-size'),
        }


class GaleraConfigContext(OSContextGenerator):
    interfaces = ['cluster']

    def __init__(self, cluster, state):
        self.cluster = cluster
        self.state = state

    def __call__(self):
        '''Generate the galera.cnf context.

        SST authenticates as root with an empty password until the unit
        has rotated to the permanent sstuser credential.
        '''
        from database_utils import (
            cluster_addresses,
            SST_AUTH_PERMANENT,
            SST_BOOTSTRAP_USER,
            SST_PASSWORD_KEY,
            SST_USER,
        )
        if self.state.sst_auth == SST_AUTH_PERMANENT:
            sstuser = SST_USER
            sstuser_password = leader_get(SST_PASSWORD_KEY)
        else:
            sstuser = SST_BOOTSTRAP_USER
            sstuser_password = ''
        return {
            'cluster_name': config('cluster-name'),
            'cluster_addresses': cluster_addresses(self.cluster),
            'node_address': unit_get('private-address'),
            'sst_method': config('sst-method'),
            'sstuser': sstuser,
            'sstuser_password': sstuser_password,
            'wsrep_provider': GALERA_PROVIDER,
        }
