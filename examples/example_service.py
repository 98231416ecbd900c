# Copyright 2025 Jared Hendrickson
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import sys
import time

from letsdns import errors
from letsdns.config import Settings, configure_logging
from letsdns.service import IssuanceService

# Read the settings from LETSDNS_* environment variables, e.g. LETSDNS_STORE_DIR=/var/lib/letsdns
settings = Settings.from_env()
configure_logging(settings.log_level)
service = IssuanceService(settings)
service.start_maintenance()

# Create the order and print the records the domain owner must publish
started = service.start_issuance("example.com", "admin@example.com", wildcard=True, client_ip="127.0.0.1")
for record in started["dns_records"]:
    print(f"{record['name']} {record['type']} {record['value']}")

# [ !!! PUBLISH THE TXT RECORDS ON YOUR DNS SERVER HERE; OR PUBLISH THEM MANUALLY !!! ]

# Check DNS until every record is visible, printing troubleshooting hints along the way
token = started["session_token"]
while not service.check_dns_status(token)["verified"]:
    for report in service.troubleshoot(token)["records"]:
        for hint in report["hints"]:
            print(hint)
    time.sleep(settings.dns_interval)

# Finish the issuance. A failure names the domain and the CA's reason; a failed record can be started over with
# service.retry_issuance(started["certificate_id"]).
try:
    result = service.complete_issuance(token, timeout=600)
except errors.LetsDNSError as exc:
    print(exc.to_dict())
    service.shutdown()
    sys.exit(1)

print(result.get("fullchain") or result)
service.shutdown()
