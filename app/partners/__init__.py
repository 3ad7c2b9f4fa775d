# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Partner configuration: catalog credentials, team domain and the default flag."""
