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
import re
import socket
import subprocess

from charmhelpers.core.hookenv import (
    config,
    is_leader,
    leader_get,
    leader_set,
    local_unit,
    log,
    related_units,
    relation_get,
    relation_ids,
    relation_set,
    status_set,
    unit_get,
    DEBUG,
    INFO,
    WARNING,
)

from charmhelpers.core.host import (
    file_hash,
    mkdir,
    pwgen,
    service_restart,
    service_stop,
)

from charmhelpers.core.decorators import (
    retry_on_exception,
)

from charmhelpers.core.templating import render
from charmhelpers.core.unitdata import kv

from charmhelpers.contrib.database.mysql import MySQLHelper

import database_contexts

MYSQL_PACKAGES = [
    'mariadb-client',
    'mariadb-server',
]

GALERA_PACKAGES = [
    'galera-4',
    'rsync',
    'socat',
]

MYSQL_SERVICE = 'mysql'

MYSQL_CONF_DIR = '/etc/mysql/conf.d'
OPENSTACK_CNF = '%s/openstack.cnf' % MYSQL_CONF_DIR
GALERA_CNF = '%s/galera.cnf' % MYSQL_CONF_DIR

MYSQL_LOG_DIR = '/var/log/mysql/'
MYSQL_RUN_DIR = '/var/run/mysqld/'

MYSQLADMIN = '/usr/bin/mysqladmin'
MYSQL = '/usr/bin/mysql'
GALERA_NEW_CLUSTER = '/usr/bin/galera_new_cluster'

MAX_RESTART_RETRIES = 5

# Leader settings shared by every unit of the cluster
ROOT_PASSWORD_KEY = 'mysql-root-password'
DB_MAKER_PASSWORD_KEY = 'db-maker-password'
SST_PASSWORD_KEY = 'sstuser-password'
FOUNDER_KEY = 'founder'

PASSWORD_KEYS = (ROOT_PASSWORD_KEY, DB_MAKER_PASSWORD_KEY, SST_PASSWORD_KEY)

DB_MAKER_USER = 'db_maker'
MONITORING_USER = 'monitoring'
SST_USER = 'sstuser'
SST_BOOTSTRAP_USER = 'root'

# Privileges every service database user gets
BASE_PRIVILEGES = [
    'ALTER',
    'CREATE',
    'DELETE',
    'DROP',
    'INDEX',
    'INSERT',
    'SELECT',
    'UPDATE',
]

DB_MAKER_PRIVILEGES = BASE_PRIVILEGES + [
    'ALTER ROUTINE',
    'CREATE ROUTINE',
    'CREATE TEMPORARY TABLES',
    'CREATE USER',
    'CREATE VIEW',
    'EXECUTE',
    'GRANT OPTION',
    'LOCK TABLES',
    'RELOAD',
    'SHOW DATABASES',
    'SHOW VIEW',
    'TRIGGER',
]

SST_PRIVILEGES = ['ALL PRIVILEGES']

SYNC_BEFORE_CNF_UPDATE = 'database_before_cnf_update'
GALERA_SEEDED_SETTING = 'galera-seeded'

# Phases of the state snapshot transfer credential
SST_AUTH_TRANSIENT = 'transient'
SST_AUTH_BARRIER_WAIT = 'barrier-wait'
SST_AUTH_PERMANENT = 'permanent'

# Node state keys
BOOTSTRAPPED_KEY = 'database.database_bootstrapped'
HA_ENABLED_KEY = 'database.ha.enabled'
REVISION_KEY = 'database.crowbar-revision'
SST_AUTH_KEY = 'database.mysql.sst_auth'
ROOT_PASSWORD_ASSIGNED_KEY = 'database.mysql.root_password_assigned'
GALERA_SEEDED_KEY = 'database.galera.seeded'
BIND_ADDRESS_KEY = 'mysql.bind_address'
SYNC_KEY_PREFIX = 'sync.'

_identifier = re.compile(r'^[A-Za-z0-9_$]+$').match


class DatabaseCharmError(Exception):
    pass


def juju_log(msg, level=None):
    log('[database] %s' % msg, level=level)


def determine_packages():
    '''Determine list of packages required for the database server.

    :returns: list of package names
    '''
    pkgs = list(MYSQL_PACKAGES)
    if config('ha-enabled'):
        pkgs.extend(GALERA_PACKAGES)
    return pkgs


class NodeState(object):
    """Persisted per-unit attributes.

    Wraps a charmhelpers unitdata store so that callers can inject an
    in-memory store. Values survive between hook executions once saved.
    """

    def __init__(self, store=None):
        self.store = store if store is not None else kv()

    def get(self, key, default=None):
        return self.store.get(key, default)

    def set(self, key, value):
        self.store.set(key, value)

    def save(self):
        self.store.flush()

    @property
    def database_bootstrapped(self):
        return bool(self.get(BOOTSTRAPPED_KEY, False))

    @database_bootstrapped.setter
    def database_bootstrapped(self, value):
        self.set(BOOTSTRAPPED_KEY, bool(value))

    @property
    def ha_enabled(self):
        return bool(self.get(HA_ENABLED_KEY, False))

    @ha_enabled.setter
    def ha_enabled(self, value):
        self.set(HA_ENABLED_KEY, bool(value))

    @property
    def revision(self):
        return int(self.get(REVISION_KEY, 0) or 0)

    @revision.setter
    def revision(self, value):
        self.set(REVISION_KEY, int(value))

    @property
    def sst_auth(self):
        return self.get(SST_AUTH_KEY, SST_AUTH_TRANSIENT)

    @sst_auth.setter
    def sst_auth(self, value):
        self.set(SST_AUTH_KEY, value)

    @property
    def root_password_assigned(self):
        return bool(self.get(ROOT_PASSWORD_ASSIGNED_KEY, False))

    @root_password_assigned.setter
    def root_password_assigned(self, value):
        self.set(ROOT_PASSWORD_ASSIGNED_KEY, bool(value))

    @property
    def galera_seeded(self):
        return bool(self.get(GALERA_SEEDED_KEY, False))

    @galera_seeded.setter
    def galera_seeded(self, value):
        self.set(GALERA_SEEDED_KEY, bool(value))

    def passed_barrier(self, name, revision):
        passed = self.get(SYNC_KEY_PREFIX + name)
        return passed is not None and int(passed) >= int(revision)

    def mark_barrier_passed(self, name, revision):
        self.set(SYNC_KEY_PREFIX + name, int(revision))


def sync_node_state(state):
    """Copy the charm configuration the sequencer depends on into state."""
    state.ha_enabled = config('ha-enabled')
    state.revision = config('revision') or 0


class ClusterNode(object):

    def __init__(self, unit, hostname=None, address=None, founder=False):
        self.unit = unit
        self.hostname = hostname
        self.address = address
        self.founder = founder

    @property
    def role(self):
        return 'founder' if self.founder else 'member'

    def __repr__(self):
        return 'ClusterNode(%s, %s)' % (self.unit, self.role)


def unit_sorted(units):
    """Return a sorted list of unit names."""
    return sorted(
        units, key=lambda a: int(a.split('/')[-1]))


def cluster_members():
    '''Build the ordered membership of the database cluster.

    The local unit and every peer on the cluster relation are returned
    sorted by unit number. The founder flag is derived from the unit name
    pinned by the leader, never stored per unit.

    :returns: list of ClusterNode
    '''
    founder = leader_get(FOUNDER_KEY)
    members = {
        local_unit(): ClusterNode(local_unit(),
                                  hostname=socket.gethostname(),
                                  address=unit_get('private-address'),
                                  founder=(local_unit() == founder)),
    }
    for rid in relation_ids('cluster'):
        for unit in related_units(rid):
            settings = relation_get(unit=unit, rid=rid) or {}
            members[unit] = ClusterNode(
                unit,
                hostname=settings.get('hostname'),
                address=settings.get('private-address'),
                founder=(unit == founder))
    return [members[u] for u in unit_sorted(members.keys())]


def is_founder(cluster, unit=None):
    """Check whether unit is the founder of the given cluster membership.

    :param cluster: list of ClusterNode as returned by cluster_members()
    :param unit: unit name to check, defaults to the local unit
    :returns: boolean
    """
    unit = unit or local_unit()
    for node in cluster:
        if node.unit == unit:
            return node.founder
    return False


def pin_founder():
    """Pin the local unit as cluster founder unless a founder is pinned.

    Only the leader may pin; once pinned the founder never moves, leader
    re-election included.
    """
    if not is_leader():
        return leader_get(FOUNDER_KEY)
    founder = leader_get(FOUNDER_KEY)
    if not founder:
        founder = local_unit()
        juju_log('Pinning %s as database cluster founder' % founder, INFO)
        leader_set(**{FOUNDER_KEY: founder})
    return founder


def cluster_addresses(cluster):
    names = [n.hostname or n.address for n in cluster]
    return 'gcomm://' + ','.join(n for n in names if n)


def seed_passwords():
    """Generate the cluster wide passwords if this unit is the leader."""
    if not is_leader():
        return
    settings = {}
    for key in PASSWORD_KEYS:
        if not leader_get(key):
            settings[key] = pwgen(32)
    if settings:
        juju_log('Seeding %s' % ', '.join(sorted(settings)), DEBUG)
        leader_set(**settings)


def passwords_seeded():
    return all(leader_get(key) for key in PASSWORD_KEYS)


def root_password():
    return leader_get(ROOT_PASSWORD_KEY)


def db_maker_password():
    return leader_get(DB_MAKER_PASSWORD_KEY)


def sst_password():
    return leader_get(SST_PASSWORD_KEY)


def _required_password(getter, name):
    password = getter()
    if not password:
        raise DatabaseCharmError('%s password has not been seeded by the '
                                 'leader' % name)
    return password


class GaleraDatabaseHelper(MySQLHelper):
    """Idempotent user and schema operations used during bootstrap.

    Creation reports an existing object and removal reports a missing one
    by returning False rather than raising.
    """

    def __init__(self, host='localhost'):
        super(GaleraDatabaseHelper, self).__init__(
            '/var/lib/charm/{}/mysql.passwd',
            '/var/lib/charm/{}/mysql-{}.passwd',
            host=host)

    def _execute(self, sql, params=None):
        cursor = self.connection.cursor()
        try:
            cursor.execute(sql, params)
        finally:
            cursor.close()

    def _select(self, sql, params=None):
        cursor = self.connection.cursor()
        try:
            cursor.execute(sql, params)
            return [list(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def user_exists(self, username, host):
        rows = self._select(
            "SELECT User FROM mysql.user WHERE User = %s AND Host = %s",
            (username, host))
        return len(rows) > 0

    def create_user(self, username, password, host):
        if self.user_exists(username, host):
            log("User %s@%s already exists" % (username, host), level=DEBUG)
            return False
        self._execute("CREATE USER %s@%s IDENTIFIED BY %s",
                      (username, host, password))
        return True

    def grant(self, username, host, privileges):
        self._execute(
            "GRANT {} ON *.* TO %s@%s".format(', '.join(privileges)),
            (username, host))
        self.flush_privileges()
        return True

    def flush_privileges(self):
        self._execute("FLUSH PRIVILEGES")

    def drop_database(self, name):
        if not _identifier(name):
            raise DatabaseCharmError('Invalid database name %r' % name)
        if not self.database_exists(name):
            log("Database %s already absent" % name, level=DEBUG)
            return False
        self._execute("DROP DATABASE `{}`".format(name))
        return True

    def drop_user(self, username, host):
        if not self.user_exists(username, host):
            log("User %s@%s already absent" % (username, host), level=DEBUG)
            return False
        self._execute("DROP USER %s@%s", (username, host))
        return True

    def drop_anonymous_users(self):
        rows = self._select("SELECT Host FROM mysql.user WHERE User = ''")
        return len([host for (host,) in rows if self.drop_user('', host)])


def get_db_helper(state=None):
    """Return a provider connected as root to the local server."""
    state = state or NodeState()
    helper = GaleraDatabaseHelper()
    password = ''
    if state.root_password_assigned:
        password = _required_password(root_password, 'root')
    helper.connect(user='root', password=password)
    return helper


def should_bootstrap(state):
    return not state.database_bootstrapped


def run_bootstrap(db_helper, state, cluster):
    """Run the one-time database initialisation batch.

    HA disabled, every unit runs the batch against its own server and sets
    the gate. HA enabled, only the founder does and the other units pick up
    the result through replication; the batch then moves the unit into
    barrier-wait and the gate is set by rotate_sst_credentials once galera
    authenticates SST as sstuser. Any provider error propagates, leaving
    the gate unset so the whole batch is attempted again on the next hook.

    :param db_helper: GaleraDatabaseHelper, or None to connect lazily
    :param state: NodeState
    :param cluster: list of ClusterNode
    :returns: True if the batch ran, False if it was skipped
    """
    if not should_bootstrap(state):
        juju_log('Database already bootstrapped, skipping', DEBUG)
        return False

    ha_enabled = state.ha_enabled
    if ha_enabled and state.sst_auth != SST_AUTH_TRANSIENT:
        juju_log('Bootstrap batch already done, waiting on SST rotation',
                 DEBUG)
        return False

    if not ha_enabled or is_founder(cluster):
        db_helper = db_helper or get_db_helper(state)
        password = _required_password(db_maker_password, DB_MAKER_USER)

        juju_log('Bootstrapping database users')
        db_helper.create_user(DB_MAKER_USER, password, '%')
        if ha_enabled:
            db_helper.create_user(MONITORING_USER, '', '%')
        db_helper.grant(DB_MAKER_USER, '%', DB_MAKER_PRIVILEGES)
        db_helper.drop_database('test')
        db_helper.drop_anonymous_users()
        if ha_enabled:
            ensure_sst_user(db_helper)
    else:
        juju_log('Not the cluster founder, database bootstrap is left to '
                 'the founder', DEBUG)

    if ha_enabled:
        state.sst_auth = SST_AUTH_BARRIER_WAIT
    else:
        state.database_bootstrapped = True
    state.save()
    return True


def ensure_sst_user(db_helper):
    password = _required_password(sst_password, SST_USER)
    db_helper.create_user(SST_USER, password, 'localhost')
    db_helper.grant(SST_USER, 'localhost', SST_PRIVILEGES)


def sync_mark(name, revision):
    """Publish that the local unit reached barrier name at revision."""
    for rid in relation_ids('cluster'):
        relation_set(relation_id=rid,
                     relation_settings={'sync-%s' % name: str(revision)})


def is_sufficient_peers(cluster):
    """Check whether the expected number of units has joined the cluster."""
    min_size = config('min-cluster-size')
    if min_size:
        if len(cluster) < int(min_size):
            juju_log('Insufficient number of units to form a cluster '
                     '(expected=%s, got=%s)' % (min_size, len(cluster)), INFO)
            return False
    return True


def sync_barrier(name, revision, cluster, state):
    '''Rendezvous of all cluster members at (name, revision).

    The local unit publishes its arrival and the barrier is reached once
    every member has published revision or later. A unit which passed
    (name, revision) before does not wait again.

    :param name: str: barrier name
    :param revision: int: barrier revision
    :param cluster: list of ClusterNode
    :param state: NodeState recording passed barriers
    :returns: boolean: True if the barrier has been reached
    '''
    if state.passed_barrier(name, revision):
        return True

    sync_mark(name, revision)
    if not is_sufficient_peers(cluster):
        return False

    key = 'sync-%s' % name
    waiting = []
    for rid in relation_ids('cluster'):
        for unit in related_units(rid):
            value = relation_get(attribute=key, unit=unit, rid=rid)
            if not value or int(value) < int(revision):
                waiting.append(unit)
    if waiting:
        juju_log('Waiting on %s for sync-%s at revision %s' %
                 (', '.join(unit_sorted(set(waiting))), name, revision),
                 INFO)
        return False

    state.mark_barrier_passed(name, revision)
    state.save()
    return True


def restart_mysql():
    """Restart MySQL, retrying while the cluster settles after a change."""
    attempts = 0
    while not service_restart(MYSQL_SERVICE):
        if attempts == MAX_RESTART_RETRIES:
            raise DatabaseCharmError('Failed to start %s (max retries '
                                     'reached)' % MYSQL_SERVICE)
        juju_log('Failed to start %s, retrying' % MYSQL_SERVICE, WARNING)
        attempts += 1


def bootstrap_galera():
    """Start the local mysqld as the first node of a new galera cluster."""
    juju_log('Bootstrapping new galera cluster')
    service_stop(MYSQL_SERVICE)
    subprocess.check_call([GALERA_NEW_CLUSTER])


def render_config_restart_on_changed(target, template, context,
                                     bootstrap=False):
    """Render a MySQL config file and restart MySQL if it changed.

    If bootstrap is True mysqld is started as a new galera cluster instead,
    whether or not the file changed. This is done once, on the founder.

    The restart happens before returning so that the following steps of
    the hook run against the reconfigured server.

    :returns: boolean: True if the service was restarted
    """
    pre_hash = file_hash(target)
    if not os.path.exists(os.path.dirname(target)):
        mkdir(os.path.dirname(target), owner='root', group='root',
              perms=0o755)
    render(template, target, context, owner='root', group='mysql',
           perms=0o640)
    if bootstrap:
        bootstrap_galera()
        return True
    if file_hash(target) != pre_hash:
        juju_log('%s changed, restarting %s' % (target, MYSQL_SERVICE))
        restart_mysql()
        return True
    log("Config file '{}' unchanged".format(target), level=DEBUG)
    return False


def notify_galera_seeded():
    """Tell the peers that the galera cluster has been bootstrapped."""
    for rid in relation_ids('cluster'):
        relation_set(relation_id=rid,
                     relation_settings={GALERA_SEEDED_SETTING: 'True'})


def founder_seeded(cluster, state):
    """Check whether the founder has bootstrapped the galera cluster."""
    if is_founder(cluster):
        return state.galera_seeded
    founders = [n.unit for n in cluster if n.founder]
    if not founders:
        return False
    for rid in relation_ids('cluster'):
        if relation_get(attribute=GALERA_SEEDED_SETTING, unit=founders[0],
                        rid=rid):
            return True
    return False


def render_galera_config(cluster, state):
    '''Render galera.cnf, bootstrapping a new cluster on the founder.

    The first render on the founder starts mysqld as a new galera cluster
    and records it in state. Other units only render, and so restart into
    the cluster, once the founder has published that it is seeded.

    :returns: boolean: True if mysqld was restarted or bootstrapped
    '''
    ctxt = database_contexts.GaleraConfigContext(cluster, state)()
    if is_founder(cluster) and not state.galera_seeded:
        render_config_restart_on_changed(GALERA_CNF, 'galera.cnf', ctxt,
                                         bootstrap=True)
        state.galera_seeded = True
        state.save()
        notify_galera_seeded()
        return True
    if not founder_seeded(cluster, state):
        juju_log('Waiting for the founder to bootstrap the galera cluster',
                 INFO)
        return False
    return render_config_restart_on_changed(GALERA_CNF, 'galera.cnf', ctxt)


def render_mysql_config(state):
    ctxt = database_contexts.MySQLConfigContext(state)()
    return render_config_restart_on_changed(OPENSTACK_CNF, 'openstack.cnf',
                                            ctxt)


def rotate_sst_credentials(db_helper, state, cluster):
    '''Move SST authentication from root to the permanent sstuser.

    The rotation waits for the bootstrap batch, then for every member to
    reach the sync barrier at the current revision so that the sstuser
    account has replicated to all of them before any unit points its
    galera config at it. A later revision goes through the barrier again
    before galera.cnf is rewritten. The bootstrap gate is set once the
    rewritten config is in place.

    :param db_helper: GaleraDatabaseHelper, or None to connect lazily
    :param state: NodeState
    :param cluster: list of ClusterNode
    :returns: boolean: True if SST authenticates as sstuser
    '''
    if not state.ha_enabled:
        return False

    if state.sst_auth == SST_AUTH_TRANSIENT:
        juju_log('Bootstrap batch not run yet, SST stays on %s' %
                 SST_BOOTSTRAP_USER, DEBUG)
        return False

    if not sync_barrier(SYNC_BEFORE_CNF_UPDATE, state.revision, cluster,
                        state):
        status_set('waiting', 'Waiting for peers to sync before '
                   'updating galera config')
        return False

    if state.sst_auth == SST_AUTH_BARRIER_WAIT:
        if should_bootstrap(state) and is_founder(cluster):
            ensure_sst_user(db_helper or get_db_helper(state))
        state.sst_auth = SST_AUTH_PERMANENT

    render_galera_config(cluster, state)
    if should_bootstrap(state):
        juju_log('Galera SST now authenticates as %s, database bootstrapped'
                 % SST_USER)
        state.database_bootstrapped = True
    state.save()
    return True


def root_has_no_password():
    return subprocess.call([MYSQL, '-u', 'root', '-e',
                            'show databases;']) == 0


# NOTE: mysqld may still be restarting after a config change
@retry_on_exception(5, base_delay=3, exc_type=subprocess.CalledProcessError)
def configure_root_password(state):
    """Assign the leader seeded root password if root has none yet."""
    if state.root_password_assigned:
        return False
    password = _required_password(root_password, 'root')
    assigned = False
    if root_has_no_password():
        juju_log('Assigning MySQL root password')
        subprocess.check_call([MYSQLADMIN, '-u', 'root', 'password',
                               password])
        assigned = True
    state.root_password_assigned = True
    state.save()
    return assigned


def ensure_directories():
    mkdir(config('tmpdir'), owner='mysql', group='mysql', perms=0o700)


def ensure_runtime_directories():
    mkdir(MYSQL_LOG_DIR, owner='mysql', group='root', perms=0o755)
    mkdir(MYSQL_RUN_DIR, owner='mysql', group='root', perms=0o755)


def resolve_bind_address(state):
    """Determine the address MySQL listens on, persisting changes."""
    address = config('bind-address') or unit_get('private-address')
    if state.get(BIND_ADDRESS_KEY) != address:
        state.set(BIND_ADDRESS_KEY, address)
        state.save()
    return address


def converge(state=None):
    '''Bring the local database server to its desired state.

    :param state: NodeState, defaults to the unit's persisted state
    :returns: boolean: False if the run is waiting on the leader or peers
    '''
    state = state or NodeState()
    if not passwords_seeded():
        status_set('waiting', 'Waiting for leader to seed passwords')
        juju_log('Passwords not seeded yet, deferring configuration')
        return False

    sync_node_state(state)
    resolve_bind_address(state)
    ensure_directories()
    render_mysql_config(state)

    cluster = cluster_members()
    if state.ha_enabled and state.sst_auth != SST_AUTH_PERMANENT:
        render_galera_config(cluster, state)
    state.save()

    if state.ha_enabled:
        juju_log('HA support for mysql is enabled')
        if not founder_seeded(cluster, state):
            status_set('waiting', 'Waiting for the founder to bootstrap the '
                       'galera cluster')
            return False
        if state.galera_seeded:
            notify_galera_seeded()
    else:
        juju_log('HA support for mysql is disabled')
        configure_root_password(state)

    run_bootstrap(None, state, cluster)
    complete = True
    if state.ha_enabled:
        complete = rotate_sst_credentials(None, state, cluster)
        if complete:
            configure_root_password(state)

    ensure_runtime_directories()
    return complete


def assess_status(state=None):
    """Set the workload status of the unit from its node state."""
    state = state or NodeState()
    if not passwords_seeded():
        status_set('waiting', 'Waiting for leader to seed passwords')
        return
    if state.ha_enabled:
        if not leader_get(FOUNDER_KEY):
            status_set('waiting', 'Waiting for leader to pin the founder')
            return
        if not founder_seeded(cluster_members(), state):
            status_set('waiting', 'Waiting for the founder to bootstrap the '
                       'galera cluster')
            return
        if (state.sst_auth != SST_AUTH_TRANSIENT and
                not state.passed_barrier(SYNC_BEFORE_CNF_UPDATE,
                                         state.revision)):
            status_set('waiting', 'Waiting for peers to sync before '
                       'updating galera config')
            return
        if state.sst_auth != SST_AUTH_PERMANENT:
            status_set('maintenance', 'Bootstrapping galera cluster')
            return
    if not state.database_bootstrapped:
        status_set('maintenance', 'Bootstrapping database')
        return
    if state.ha_enabled:
        status_set('active', 'Unit is ready and clustered')
    else:
        status_set('active', 'Unit is ready')

