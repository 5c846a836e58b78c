import threading

from fibernet.hookflag import is_hook_enable, set_hook_enable


def in_fresh_thread(fn):
    box = {}

    def target():
        try:
            box["value"] = fn()
        except BaseException as exc:  # noqa: BLE001
            box["error"] = exc

    t = threading.Thread(target=target)
    t.start()
    t.join(10)
    assert not t.is_alive()
    if "error" in box:
        raise box["error"]
    return box.get("value")


def test_disabled_by_default():
    def probe():
        return is_hook_enable()

    assert in_fresh_thread(probe) is False


def test_enable_and_disable():
    def probe():
        set_hook_enable(True)
        first = is_hook_enable()
        set_hook_enable(False)
        return first, is_hook_enable()

    assert in_fresh_thread(probe) == (True, False)


def test_flag_is_per_thread():
    def probe():
        set_hook_enable(True)
        other = in_fresh_thread(is_hook_enable)
        return is_hook_enable(), other

    assert in_fresh_thread(probe) == (True, False)


def test_truthy_values_are_normalised():
    def probe():
        set_hook_enable(1)
        return is_hook_enable()

    assert in_fresh_thread(probe) is True