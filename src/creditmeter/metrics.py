from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram


class MetricsRecorder:
    """
    records limit checks, reservation outcomes and notification
    throttling decisions as Prometheus metrics.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._limit_checks: "Counter" = Counter(
            "creditmeter_limit_checks_total",
            "Spending limits evaluated, by scope and result",
            ["scope", "result"],
            registry=registry,
        )
        self._reservations: "Counter" = Counter(
            "creditmeter_reservations_total",
            "Pre-flight reservation attempts by outcome",
            ["outcome"],
            registry=registry,
        )
        self._reserved_amount: "Counter" = Counter(
            "creditmeter_reserved_nano_dollars_total",
            "Total nano-dollars held by credit reservations",
            registry=registry,
        )
        self._adjustments: "Counter" = Counter(
            "creditmeter_adjustments_total",
            "Post-call reservation adjustments by outcome",
            ["outcome"],
            registry=registry,
        )
        self._refunds: "Counter" = Counter(
            "creditmeter_refunds_total",
            "Reservation refunds by outcome",
            ["outcome"],
            registry=registry,
        )
        self._notifications: "Counter" = Counter(
            "creditmeter_notifications_total",
            "Error notification attempts per recipient",
            ["error_type", "outcome"],
            registry=registry,
        )
        self._collaborator_duration: "Histogram" = Histogram(
            "creditmeter_collaborator_duration_seconds",
            "Duration of calls into external collaborators",
            ["collaborator"],
            registry=registry,
        )

    def inc_limit_check(self, scope: "str", passed: "bool") -> "None":
        result = "passed" if passed else "failed"
        self._limit_checks.labels(scope=scope, result=result).inc()

    def inc_reservation(self, outcome: "str", amount: "int" = 0) -> "None":
        self._reservations.labels(outcome=outcome).inc()
        if amount > 0:
            self._reserved_amount.inc(amount)

    def inc_adjustment(self, outcome: "str") -> "None":
        self._adjustments.labels(outcome=outcome).inc()

    def inc_refund(self, outcome: "str") -> "None":
        self._refunds.labels(outcome=outcome).inc()

    def inc_notification(self, error_type: "str", outcome: "str") -> "None":
        self._notifications.labels(error_type=error_type, outcome=outcome).inc()

    def observe_collaborator(
        self, collaborator: "str", duration_seconds: "float"
    ) -> "None":
        self._collaborator_duration.labels(collaborator=collaborator).observe(
            duration_seconds
        )
