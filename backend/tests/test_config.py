# Overview: Pytest coverage for immutable settings, deadlines and settings reload.

import dataclasses
import time

import pytest

from warranty import create_app, reload_settings
from warranty.config import WarrantySettings
from warranty.deadline import CancellationToken, Deadline
from warranty.errors import TimeoutError_, ValidationError


class TestWarrantySettings:

    def test_defaults_meet_entropy_floor(self):
        settings = WarrantySettings()
        assert settings.entropy_bits == 80
        assert len(settings.code_alphabet) == 32

    def test_settings_are_frozen(self):
        settings = WarrantySettings()
        with pytest.raises(dataclasses.FrozenInstanceError):
            settings.code_length = 8

    def test_from_mapping_reads_warranty_keys_only(self):
        settings = WarrantySettings.from_mapping({
            "WARRANTY_BATCH_CHUNK_SIZE": 250,
            "WARRANTY_DEFAULT_REPAIR_DAYS": 3,
            "UNRELATED": "ignored",
        })
        assert settings.batch_chunk_size == 250
        assert settings.default_repair_days == 3
        assert settings.code_length == 16

    def test_short_codes_rejected(self):
        with pytest.raises(ValidationError):
            WarrantySettings(code_length=15)

    def test_duplicate_alphabet_symbols_rejected(self):
        with pytest.raises(ValidationError):
            WarrantySettings(code_alphabet="AAB" * 11)

    def test_statement_timeout_must_be_shorter_than_request_timeout(self):
        with pytest.raises(ValidationError):
            WarrantySettings(request_timeout_ms=1000, db_statement_timeout_ms=1000)

    @pytest.mark.parametrize("threshold", [0, 1, 1.5, -0.1])
    def test_collision_threshold_bounds(self, threshold):
        with pytest.raises(ValidationError):
            WarrantySettings(collision_threshold=threshold)

    def test_max_length_not_below_length(self):
        with pytest.raises(ValidationError):
            WarrantySettings(code_max_length=10)


class TestCreateApp:

    def test_invalid_config_fails_at_startup(self):
        with pytest.raises(ValidationError):
            create_app({
                "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
                "WARRANTY_CODE_LENGTH": 8,
                "WARRANTY_BATCH_DISPATCHER": None,
            })

    def test_reload_swaps_container(self, app, service):
        original = app.extensions["warranty"]
        try:
            settings = reload_settings(app, {"WARRANTY_DEFAULT_REPAIR_DAYS": 10})
            assert settings.default_repair_days == 10
            assert app.extensions["warranty"] is not original
            assert app.extensions["warranty"].settings is settings
            # The old container keeps its own immutable value
            assert original.settings.default_repair_days == 7
        finally:
            app.config["WARRANTY_DEFAULT_REPAIR_DAYS"] = 7
            app.extensions["warranty"] = original


class TestDeadline:

    def test_check_passes_before_expiry(self):
        Deadline.after_ms(10_000).check("work")

    def test_expired_deadline_raises_timeout(self):
        deadline = Deadline(time.monotonic() - 1)
        with pytest.raises(TimeoutError_) as exc_info:
            deadline.check("load claim")
        assert exc_info.value.code == "timeout"
        assert "load claim" in exc_info.value.message

    def test_cancelled_token_raises_timeout(self):
        token = CancellationToken()
        deadline = Deadline.never(token)
        token.cancel("client disconnected")
        with pytest.raises(TimeoutError_) as exc_info:
            deadline.check()
        assert exc_info.value.details == {"reason": "client disconnected"}

    def test_statement_timeout_shrinks_with_remaining_time(self):
        assert Deadline.never().statement_timeout_ms(5000) == 5000
        assert Deadline.after_ms(60_000).statement_timeout_ms(5000) == 5000
        assert Deadline.after_ms(200).statement_timeout_ms(5000) <= 200
