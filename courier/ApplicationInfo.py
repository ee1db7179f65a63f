"""
Portal Courier
Copyright (c) 2025 Portal Courier contributors

    This program is free software: you can redistribute it and/or modify it under the terms of the GNU General Public
    License as published by the Free Software Foundation, either version 3 of the License, or (at your option) any later
    version.

    This program is distributed in the hope that it will be useful, but WITHOUT ANY WARRANTY; without even the implied
    warranty of MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the GNU General Public License for more
    details.

    You should have received a copy of the GNU General Public License along with this program.
    If not, see <http://www.gnu.org/licenses/>.
"""
applicationInfo = {
    "name": "PORTAL COURIER",
    "version": "0.3.0",
    "build": '1792281600',
    "license": "GPL v3",
    "desc": "Portal Courier drives a browser through a payment portal's login, one-time code and \n" +
            "file-upload form, falling back across browser engines and a regional proxy when the \n" +
            "site is unreachable or blocks the caller.",
}

_LOGO = r"""
  ___          _        _    ___                 _
 | _ \___ _ _| |_ __ _| |  / __|___ _  _ _ _(_)___ _ _
 |  _/ _ \ '_|  _/ _` | | | (__/ _ \ || | '_| / -_) '_|
 |_| \___/_|  \__\__,_|_|  \___\___/\_,_|_| |_\___|_|
"""


def getVersion():
    return f"{applicationInfo['version']}-{applicationInfo['build']}"


def getConsoleLogo():
    return f"{_LOGO}\n  {applicationInfo['name']} {getVersion()}\n"
