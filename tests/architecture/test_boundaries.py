from pytest_archon import archrule

_CORE = (
    "partitioned_messaging.assigner",
    "partitioned_messaging.consumer",
    "partitioned_messaging.dead_letter",
    "partitioned_messaging.engine",
    "partitioned_messaging.envelope",
    "partitioned_messaging.partition_queue",
    "partitioned_messaging.reprocessor",
    "partitioned_messaging.topology",
    "partitioned_messaging.tracker",
    "partitioned_messaging.watchdog",
)


def test_core_is_broker_independent() -> None:
    """
    The in-process pipeline must run without any broker client installed.
    It may not reach into adapters or aio-pika.
    """
    (
        archrule("core_is_broker_independent")
        .match(*_CORE)
        .should_not_import("partitioned_messaging.adapters*")
        .should_not_import("aio_pika*")
        .check("partitioned_messaging", only_direct_imports=True)
    )


def test_ports_are_abstract() -> None:
    """
    Ports define protocols only; they never depend on a concrete transport.
    """
    (
        archrule("ports_are_abstract")
        .match("partitioned_messaging.ports*")
        .should_not_import("partitioned_messaging.adapters*")
        .should_not_import("partitioned_messaging.engine")
        .should_not_import("aio_pika*")
        .check("partitioned_messaging", only_direct_imports=True)
    )


def test_memory_adapter_has_no_broker_client() -> None:
    (
        archrule("memory_adapter_isolation")
        .match("partitioned_messaging.adapters.memory*")
        .should_not_import("aio_pika*")
        .should_not_import("partitioned_messaging.adapters.rabbitmq*")
        .check("partitioned_messaging", only_direct_imports=True)
    )


def test_relay_depends_on_the_transport_port_only() -> None:
    """
    The relay talks to a Transport; the concrete adapter is chosen by the CLI.
    """
    (
        archrule("relay_uses_port")
        .match("partitioned_messaging.relay")
        .should_not_import("partitioned_messaging.adapters*")
        .should_not_import("aio_pika*")
        .check("partitioned_messaging", only_direct_imports=True)
    )
