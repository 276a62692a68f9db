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

from unittest.mock import MagicMock

_path = os.path.dirname(os.path.realpath(__file__))
_root = os.path.abspath(os.path.join(_path, '..'))

for _dir in (_path,
             os.path.join(_root, 'hooks'),
             os.path.join(_root, 'actions')):
    if _dir not in sys.path:
        sys.path.append(_dir)

# python-apt and MySQLdb are not installed as part of test requirements but
# are imported by some charmhelpers modules so create fake imports.
mock_apt = MagicMock()
sys.modules['apt'] = mock_apt
mock_apt.apt_pkg = MagicMock()

sys.modules['MySQLdb'] = MagicMock()

# charmhelpers.core.host picks its platform module at import time and only
# recognises lowercase "debian" in /etc/os-release; pin the Debian-family
# answer so the suite can import it on Debian hosts ("Debian GNU/Linux").
import charmhelpers.osplatform  # noqa: E402
charmhelpers.osplatform.get_platform = lambda: "ubuntu"
