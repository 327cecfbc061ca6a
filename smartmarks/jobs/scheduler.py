import os
from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler

from smartmarks.extensions import db
from smartmarks.models import ApiToken, utcnow
from smartmarks.services.feed import prune_feed_events


scheduler = BackgroundScheduler()


def purge_stale_tokens(retention_minutes: int, now=None) -> int:
    cutoff = (now or utcnow()) - timedelta(minutes=retention_minutes)
    deleted = ApiToken.query.filter(
        (ApiToken.expires_at < cutoff) | (ApiToken.revoked_at < cutoff)
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted


def run_feed_maintenance(app):
    with app.app_context():
        retention = app.config["FEED_RETENTION_MINUTES"]
        try:
            pruned = prune_feed_events(retention)
            purged = purge_stale_tokens(retention)
        except Exception as exc:
            db.session.rollback()
            app.logger.warning("Feed maintenance failed: %s", exc)
            return
        finally:
            db.session.remove()
        if pruned or purged:
            app.logger.info(
                "Feed maintenance pruned %s events and %s tokens", pruned, purged
            )


def start_scheduler(app):
    if not app.config.get("SCHEDULER_ENABLED", True):
        return
    if os.environ.get("WERKZEUG_RUN_MAIN") == "false":
        return

    interval_minutes = app.config["FEED_PRUNE_INTERVAL_MINUTES"]
    if not scheduler.get_jobs():
        scheduler.add_job(
            run_feed_maintenance,
            "interval",
            minutes=interval_minutes,
            kwargs={"app": app},
            id="feed_maintenance",
            replace_existing=True,
        )
        scheduler.start()
