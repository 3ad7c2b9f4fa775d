# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""HTTP clients for the identity authority, partner catalogs and portfolio lookup."""
