"""
Unit tests for settings validation
"""

import pytest
from pydantic import ValidationError

from app.config import Settings


class TestSettings:
    """Test configuration parsing"""

    def test_defaults(self):
        """Reason-required defaults and referral policy"""
        config = Settings(_env_file=None)
        assert config.workflow_reason_required == ["*->REFERRED", "*->CLOSED"]
        assert config.sync_auto_referral_policy == "all"

    def test_comma_separated_patterns(self):
        """Patterns given as a string are split and normalized"""
        config = Settings(_env_file=None, workflow_reason_required="*->referred, TRIAGED -> CLOSED")
        assert config.workflow_reason_required == ["*->REFERRED", "TRIAGED->CLOSED"]

    def test_bad_pattern(self):
        """Patterns need exactly one arrow"""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, workflow_reason_required="TRIAGED")

    def test_referral_policy(self):
        """Policy is case-insensitive and validated"""
        assert Settings(_env_file=None, sync_auto_referral_policy="RED_TRIAGE").sync_auto_referral_policy == "red_triage"
        with pytest.raises(ValidationError):
            Settings(_env_file=None, sync_auto_referral_policy="sometimes")

    def test_task_limits(self):
        """Soft limit below hard limit"""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, task_time_limit=300, task_soft_time_limit=300)

    def test_couchdb_database_url(self):
        """Database URL joins server and database"""
        config = Settings(_env_file=None, couchdb_url="http://couch:5984/", couchdb_database="hb")
        assert config.couchdb_database_url == "http://couch:5984/hb"
