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

import yaml

from charmhelpers.core.hookenv import (
    config,
    log,
    related_units,
    relation_get,
    relation_ids,
    unit_get,
    DEBUG,
)

from charmhelpers.core.host import (
    service_restart,
    write_file,
)

MONASCA_AGENT_SERVICE = 'monasca-agent'
MONASCA_CONF_DIR = '/etc/monasca/agent/conf.d'
HTTP_CHECK_CONF = os.path.join(MONASCA_CONF_DIR, 'http_check.yaml')

CINDER_API_CHECK = 'volume-api'
CINDER_BUILT_BY = 'cinder-controller'


def monasca_server_available():
    """Check whether a monasca-agent relation points at a Monasca API."""
    for rid in relation_ids('monasca-agent'):
        for unit in related_units(rid):
            if relation_get('monasca-api-url', unit=unit, rid=rid):
                return True
    return False


def cinder_api_bind_host_port():
    host = config('cinder-api-bind-host') or unit_get('private-address')
    return host, config('cinder-api-port')


def cinder_api_monitor_url():
    host, port = cinder_api_bind_host_port()
    return '{}://{}:{}/'.format(config('cinder-api-protocol'), host, port)


def load_http_check(path=HTTP_CHECK_CONF):
    if not os.path.exists(path):
        return {'init_config': None, 'instances': []}
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    data.setdefault('init_config', None)
    data['instances'] = data.get('instances') or []
    return data


def register_http_check(name, url, built_by, dimensions=None,
                        match_pattern=None, timeout=10,
                        path=HTTP_CHECK_CONF):
    '''Register an http_check instance with the local monasca-agent.

    An instance previously registered with the same built_by and name is
    replaced, instances of other owners are preserved.

    :param name: str: check name, also reported as a dimension
    :param url: str: URL to check
    :param built_by: str: owner of the instance
    :param dimensions: dict: extra dimensions attached to the metrics
    :param match_pattern: str: regex the response body must match
    :returns: boolean: True if the agent configuration changed
    '''
    instance = {
        'name': name,
        'url': url,
        'built_by': built_by,
        'timeout': timeout,
    }
    if dimensions:
        instance['dimensions'] = dict(dimensions)
    if match_pattern:
        instance['match_pattern'] = match_pattern

    data = load_http_check(path)
    instances = []
    for existing in data['instances']:
        if not (existing.get('built_by') == built_by and
                existing.get('name') == name):
            instances.append(existing)
        elif instance not in instances:
            # replaced in place, later duplicates are dropped
            instances.append(instance)
    if instance not in instances:
        instances.append(instance)
    if instances == data['instances']:
        log('http_check {} unchanged'.format(name), level=DEBUG)
        return False

    data['instances'] = instances
    write_file(path, yaml.safe_dump(data, default_flow_style=False),
               owner='root', group='root', perms=0o644)
    return True


def update_cinder_api_check():
    """Monitor the cinder API through monasca-agent when available.

    :returns: boolean: True if the check was (re)registered
    """
    if not config('monitor-cinder-api'):
        return False
    if not relation_ids('monasca-agent'):
        return False
    if not monasca_server_available():
        log('No Monasca server available, skipping cinder-api check',
            level=DEBUG)
        return False

    changed = register_http_check(
        CINDER_API_CHECK,
        cinder_api_monitor_url(),
        CINDER_BUILT_BY,
        dimensions={'service': CINDER_API_CHECK},
        match_pattern='.*v3.*')
    if changed:
        service_restart(MONASCA_AGENT_SERVICE)
    return changed
