from nodeprep import errors


def test_custom_errors_are_distinct():
    excs = [
        errors.InspectionError,
        errors.FirmwareQueryError,
        errors.PreconditionViolation,
        errors.ConfirmationRejected,
        errors.OperationFailure,
        errors.VerificationFailure,
        errors.PrerequisiteMissing,
        errors.BootConfigError,
        errors.MountError,
    ]
    instances = [exc("message") for exc in excs]
    assert all(isinstance(inst, errors.NodePrepError) for inst in instances)
    assert len({type(inst) for inst in instances}) == len(excs)


def test_state_is_carried():
    exc = errors.OperationFailure("dd failed", state={"rc": 1})
    assert exc.state == {"rc": 1}
    assert str(exc) == "dd failed"
    assert errors.MountError("x").state == {}
    assert issubclass(errors.FirmwareQueryError, errors.InspectionError)
