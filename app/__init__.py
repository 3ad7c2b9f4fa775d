# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Perks Gate: membership-gated access resolution for the perks portal."""
