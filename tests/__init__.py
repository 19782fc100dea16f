# SPDX-License-Identifier: Apache-2.0
"""
LLM dispatch core tests

Adapters are exercised against faked vendor HTTP; the dispatcher against
scripted in-process adapters.
"""
