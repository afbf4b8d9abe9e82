#!/usr/bin/env python3
"""
Slack Archive Bot
Archives empty and inactive channels, posting a notice before each archive
"""

import os
import sys
import argparse
import time
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Optional, Mapping, FrozenSet

try:
    from slack_sdk import WebClient
    from slack_sdk.errors import SlackApiError
except ImportError:
    print("Error: slack_sdk not installed. Please run: pip install slack-sdk")
    sys.exit(1)

DEFAULT_INACTIVE_DAYS = 30
DEFAULT_MAX_WORKERS = 16
HISTORY_PAGE_SIZE = 5
SECONDS_PER_DAY = 86400

# No qualifying message found, or the history lookup failed
NO_ACTIVITY = -1

SKIP_SUBTYPES = frozenset({'channel_join', 'channel_leave'})

NOTICE_PRETEXT = "Channel archive notice"
DEFAULT_EMPTY_MESSAGE = (
    "This channel has no members and is being archived automatically. "
    "An admin can unarchive it if it is still needed."
)
DEFAULT_INACTIVE_MESSAGE = (
    "This channel has had no activity for more than {days} days and is being "
    "archived automatically. An admin can unarchive it if it is still needed."
)


class ArchivalReason(Enum):
    EMPTINESS = 'emptiness'
    INACTIVITY = 'inactivity'


@dataclass(frozen=True)
class Channel:
    id: str
    name: str
    num_members: int = 0

    @classmethod
    def from_api(cls, data: Dict) -> 'Channel':
        return cls(id=data['id'], name=data.get('name', ''),
                   num_members=data.get('num_members', 0) or 0)

    def __str__(self):
        return f"#{self.name} ({self.id})"


@dataclass(frozen=True)
class Message:
    ts: str
    subtype: Optional[str] = None


@dataclass(frozen=True)
class ChannelActivity:
    """Last substantive activity of a channel, or NO_ACTIVITY"""
    channel: Channel
    timestamp: int


def _env_flag(value: Optional[str]) -> bool:
    return (value or '').strip().lower() == 'true'


def _positive_int(value, default: int) -> int:
    """Parse a positive integer, falling back to default on zero or garbage"""
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def parse_whitelist(value: Optional[str]) -> FrozenSet[str]:
    """Parse a comma-separated list of channel names"""
    if not value:
        return frozenset()
    return frozenset(name.strip() for name in value.split(',') if name.strip())


@dataclass
class Settings:
    token: str = ''
    no_empties: bool = False
    no_inactives: bool = False
    inactive_days: int = DEFAULT_INACTIVE_DAYS
    whitelist: FrozenSet[str] = field(default_factory=frozenset)
    notify: Optional[str] = None
    debug: bool = False
    empty_message: str = DEFAULT_EMPTY_MESSAGE
    inactive_message: str = DEFAULT_INACTIVE_MESSAGE
    dry_run: bool = False
    max_workers: int = DEFAULT_MAX_WORKERS

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        """Read all ARCHIVEBOT_* variables once"""
        env = os.environ if environ is None else environ
        return cls(
            token=env.get('ARCHIVEBOT_SLACK_TOKEN', ''),
            no_empties=_env_flag(env.get('ARCHIVEBOT_NO_EMPTIES')),
            no_inactives=_env_flag(env.get('ARCHIVEBOT_NO_INACTIVES')),
            inactive_days=_positive_int(env.get('ARCHIVEBOT_INACTIVE_DAYS'), DEFAULT_INACTIVE_DAYS),
            whitelist=parse_whitelist(env.get('ARCHIVEBOT_CHANNEL_WHITELIST')),
            notify=env.get('ARCHIVEBOT_NOTIFY') or None,
            debug=_env_flag(env.get('ARCHIVEBOT_DEBUG')),
            empty_message=env.get('ARCHIVEBOT_EMPTY_MESSAGE') or DEFAULT_EMPTY_MESSAGE,
            inactive_message=env.get('ARCHIVEBOT_INACTIVE_MESSAGE') or DEFAULT_INACTIVE_MESSAGE,
            dry_run=_env_flag(env.get('ARCHIVEBOT_DRY_RUN')),
            max_workers=_positive_int(env.get('ARCHIVEBOT_MAX_WORKERS'), DEFAULT_MAX_WORKERS),
        )


class SlackDirectory:
    """The handful of Slack Web API calls the bot needs"""

    def __init__(self, client: WebClient):
        self.client = client

    def auth_test(self) -> Dict:
        """Check the token and return the bot identity"""
        return self.client.auth_test()

    def list_channels(self, exclude_archived: bool = True) -> List[Channel]:
        """List public channels with pagination support"""
        channels = []
        cursor = None
        while True:
            params = {'types': 'public_channel', 'exclude_archived': exclude_archived, 'limit': 200}
            if cursor:
                params['cursor'] = cursor

            result = self.client.conversations_list(**params)
            channels.extend(Channel.from_api(c) for c in result['channels'])

            cursor = (result.get('response_metadata') or {}).get('next_cursor')
            if not cursor:
                break
        return channels

    def get_history(self, channel_id: str, latest: Optional[str] = None,
                    count: int = HISTORY_PAGE_SIZE) -> List[Message]:
        """Fetch one page of history, newest first, strictly older than latest"""
        params = {'channel': channel_id, 'limit': count}
        if latest:
            params['latest'] = latest
        result = self.client.conversations_history(**params)
        return [Message(ts=m['ts'], subtype=m.get('subtype')) for m in result['messages']]

    def post_message(self, target: str, text: str, attachment: Optional[Dict] = None,
                     link_names: bool = True) -> None:
        """Post a message, optionally with a single attachment"""
        params = {'channel': target, 'text': text, 'link_names': link_names}
        if attachment:
            params['attachments'] = [attachment]
        self.client.chat_postMessage(**params)

    def archive_channel(self, channel_id: str) -> None:
        """Archive a channel by id"""
        self.client.conversations_archive(channel=channel_id)


def _slack_error(e: SlackApiError) -> str:
    try:
        return e.response['error']
    except (KeyError, TypeError):
        return str(e)


def filter_whitelisted_channels(channels: List[Channel], whitelist: FrozenSet[str]) -> List[Channel]:
    """Drop channels whose name is whitelisted, keeping order"""
    if not whitelist:
        return list(channels)
    return [c for c in channels if c.name not in whitelist]


def filter_empty_channels(channels: List[Channel]) -> List[Channel]:
    """Channels nobody is a member of, keeping order"""
    return [c for c in channels if c.num_members == 0]


def parse_timestamp(ts: str) -> int:
    """Whole seconds of a Slack ts such as '1000.123456'"""
    return int(ts.split('.')[0])


def last_message_timestamp(directory: SlackDirectory, channel: Channel,
                           logger: logging.Logger) -> int:
    """Timestamp of the newest message that is not a join/leave event"""
    latest = None
    while True:
        try:
            messages = directory.get_history(channel.id, latest=latest, count=HISTORY_PAGE_SIZE)
        except SlackApiError as e:
            logger.debug(f"{channel}: History lookup failed - {_slack_error(e)}")
            return NO_ACTIVITY

        if not messages:
            return NO_ACTIVITY

        for msg in messages:
            latest = msg.ts
            if msg.subtype in SKIP_SUBTYPES:
                continue
            try:
                return parse_timestamp(msg.ts)
            except ValueError:
                continue


def inactivity_cutoff(inactive_days: int, now: Optional[float] = None) -> int:
    """Epoch seconds before which a channel counts as inactive"""
    if now is None:
        now = time.time()
    return int(now) - SECONDS_PER_DAY * inactive_days


def filter_inactive_channels(directory: SlackDirectory, channels: List[Channel], inactive_days: int,
                             logger: logging.Logger, max_workers: int = DEFAULT_MAX_WORKERS,
                             now: Optional[float] = None) -> List[Channel]:
    """Channels last active before the cutoff, in lookup completion order"""
    cutoff = inactivity_cutoff(inactive_days, now)
    inactive = []
    if not channels:
        return inactive

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_channel = {
            executor.submit(last_message_timestamp, directory, channel, logger): channel
            for channel in channels
        }

        for future in as_completed(future_to_channel):
            channel = future_to_channel[future]
            try:
                activity = ChannelActivity(channel, future.result())
            except Exception as e:
                logger.error(f"{channel}: Unexpected error looking up activity - {e}")
                activity = ChannelActivity(channel, NO_ACTIVITY)

            if 0 < activity.timestamp < cutoff:
                inactive.append(activity.channel)

    logger.info(f"Inactive channels (no activity in {inactive_days} days): {len(inactive)}")
    return inactive


def render_notice(template: str, settings: Settings) -> str:
    """Fill in the {days} placeholder of a notice template"""
    return template.replace('{days}', str(settings.inactive_days))


def notify_operator(directory: SlackDirectory, target: str, text: str,
                    logger: logging.Logger) -> bool:
    """Send a plain message to the operator; failures are only logged"""
    try:
        directory.post_message(target, text)
        return True
    except SlackApiError as e:
        logger.error(f"Error posting error message to Slack: {_slack_error(e)}")
    except Exception as e:
        logger.error(f"Error posting error message to Slack: {e}")
    return False


def archive_channel(directory: SlackDirectory, channel: Channel, reason: ArchivalReason,
                    notice: str, settings: Settings, logger: logging.Logger) -> str:
    """Post the notice, then archive. Returns 'archived', 'failed' or 'dry_run'"""
    if settings.dry_run:
        logger.info(f"[DRY RUN] Would archive: {channel}")
        return 'dry_run'

    try:
        directory.post_message(
            channel.id, notice,
            attachment={'pretext': NOTICE_PRETEXT, 'text': notice, 'fallback': notice},
            link_names=True,
        )
    except SlackApiError as e:
        logger.warning(f"{channel}: Could not post archive notice - {_slack_error(e)}")
    except Exception as e:
        logger.warning(f"{channel}: Could not post archive notice - {e}")

    try:
        directory.archive_channel(channel.id)
    except Exception as e:
        error = _slack_error(e) if isinstance(e, SlackApiError) else str(e)
        message = f"Error archiving channel #{channel.name} ({channel.id}): {error}"
        logger.error(message)
        if settings.notify:
            notify_operator(directory, settings.notify, message, logger)
        return 'failed'

    logger.info(f"Successfully archived: {channel} ({reason.value})")
    return 'archived'


def archive_channels(directory: SlackDirectory, channels: List[Channel], reason: ArchivalReason,
                     notice: str, settings: Settings, logger: logging.Logger) -> Dict:
    """Archive channels concurrently; returns once every attempt has finished"""
    stats = {'processed': 0, 'successful': 0, 'failed': 0}
    if not channels:
        return stats

    mode = "DRY RUN" if settings.dry_run else "LIVE"
    logger.info(f"Starting {mode} archive of {len(channels)} channels due to {reason.value}")

    with ThreadPoolExecutor(max_workers=settings.max_workers) as executor:
        futures = []
        for channel in channels:
            logger.info(f"Archiving {channel} due to {reason.value}")
            futures.append(executor.submit(
                archive_channel, directory, channel, reason, notice, settings, logger))

        for future in as_completed(futures):
            stats['processed'] += 1
            try:
                outcome = future.result()
            except Exception as e:
                logger.error(f"Unexpected error during archive: {e}")
                outcome = 'failed'
            if outcome == 'failed':
                stats['failed'] += 1
            else:
                stats['successful'] += 1

    logger.info(f"{mode} archive due to {reason.value} complete. Stats: {stats}")
    return stats


def archive_empty_channels(directory: SlackDirectory, channels: List[Channel],
                           settings: Settings, logger: logging.Logger) -> Dict:
    """Emptiness pipeline: pick channels without members and archive them"""
    empty = filter_empty_channels(channels)
    logger.info(f"Empty channels: {len(empty)}")
    notice = render_notice(settings.empty_message, settings)
    return archive_channels(directory, empty, ArchivalReason.EMPTINESS, notice, settings, logger)


def archive_inactive_channels(directory: SlackDirectory, channels: List[Channel],
                              settings: Settings, logger: logging.Logger) -> Dict:
    """Inactivity pipeline, announced to the operator in debug mode"""
    if settings.notify and settings.debug:
        announcement = f"Archiving channels inactive for more than {settings.inactive_days} days"
        if settings.dry_run:
            logger.info(f"[DRY RUN] Would notify {settings.notify}: {announcement}")
        else:
            notify_operator(directory, settings.notify, announcement, logger)
    inactive = filter_inactive_channels(directory, channels, settings.inactive_days, logger,
                                        max_workers=settings.max_workers)
    notice = render_notice(settings.inactive_message, settings)
    return archive_channels(directory, inactive, ArchivalReason.INACTIVITY, notice, settings, logger)


def run(directory: SlackDirectory, settings: Settings, logger: logging.Logger) -> Optional[Dict]:
    """One full pass. Returns stats per reason, or None if channels could not be listed"""
    try:
        channels = directory.list_channels(exclude_archived=True)
    except SlackApiError as e:
        logger.error(f"Error when loading channels: {_slack_error(e)}")
        return None
    except Exception as e:
        logger.error(f"Error when loading channels: {e}")
        return None

    logger.info(f"Loaded {len(channels)} channels")
    channels = filter_whitelisted_channels(channels, settings.whitelist)
    logger.info(f"Channels after whitelist: {len(channels)}")

    pipelines = {}
    if settings.no_empties:
        logger.info("Skipping archiving of empty channels because ARCHIVEBOT_NO_EMPTIES was set to true")
    else:
        pipelines[ArchivalReason.EMPTINESS] = archive_empty_channels
    if settings.no_inactives:
        logger.info("Skipping archiving of inactive channels because ARCHIVEBOT_NO_INACTIVES was set to true")
    else:
        pipelines[ArchivalReason.INACTIVITY] = archive_inactive_channels

    results = {}
    if not pipelines:
        return results

    with ThreadPoolExecutor(max_workers=len(pipelines)) as executor:
        future_to_reason = {
            executor.submit(pipeline, directory, channels, settings, logger): reason
            for reason, pipeline in pipelines.items()
        }
        for future in as_completed(future_to_reason):
            reason = future_to_reason[future]
            try:
                results[reason.value] = future.result()
            except Exception as e:
                logger.error(f"Error archiving channels due to {reason.value}: {e}")

    return results


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> logging.Logger:
    """Configure logging with appropriate verbosity"""
    level = logging.DEBUG if verbose else logging.INFO

    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )
    logger = logging.getLogger('slack_archivebot')
    if log_file:
        logger.info(f"Logging initialized. Log file: {log_file}")
    return logger


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line options"""
    parser = argparse.ArgumentParser(description='Archive empty and inactive Slack channels')
    parser.add_argument('--token', type=str, help='Slack token (default: ARCHIVEBOT_SLACK_TOKEN)')
    parser.add_argument('--inactive-days', type=int, help='Days without activity before archiving')
    parser.add_argument('--whitelist', type=str, help='Comma-separated channel names to never archive')
    parser.add_argument('--notify', type=str, help='Channel or user to notify about failures')
    parser.add_argument('--no-empties', action='store_true', help='Skip archiving of empty channels')
    parser.add_argument('--no-inactives', action='store_true', help='Skip archiving of inactive channels')
    parser.add_argument('--dry-run', action='store_true', help='Log what would be archived and change nothing')
    parser.add_argument('--debug', action='store_true', help='Trace Slack API calls and announce the run')
    parser.add_argument('--verbose', action='store_true', help='Enable verbose logging')
    parser.add_argument('--log-file', type=str, help='Also write the log to this file')
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Environment settings with command-line overrides applied"""
    settings = Settings.from_env(environ)
    if args.token:
        settings.token = args.token
    if args.inactive_days is not None:
        settings.inactive_days = _positive_int(args.inactive_days, DEFAULT_INACTIVE_DAYS)
    if args.whitelist is not None:
        settings.whitelist = parse_whitelist(args.whitelist)
    if args.notify:
        settings.notify = args.notify
    settings.no_empties = settings.no_empties or args.no_empties
    settings.no_inactives = settings.no_inactives or args.no_inactives
    settings.dry_run = settings.dry_run or args.dry_run
    settings.debug = settings.debug or args.debug
    return settings


def main(argv: Optional[List[str]] = None):
    args = parse_args(argv)
    logger = setup_logging(args.verbose, args.log_file)
    settings = settings_from_args(args)

    if not settings.token:
        logger.error("No token provided. Set ARCHIVEBOT_SLACK_TOKEN or pass --token")
        sys.exit(1)

    if settings.debug:
        logging.getLogger('slack_sdk').setLevel(logging.DEBUG)

    directory = SlackDirectory(WebClient(token=settings.token))

    try:
        auth = directory.auth_test()
        logger.info(f"Authenticated as: {auth['user']} in {auth['team']}")
    except SlackApiError as e:
        logger.error(f"Authentication failed: {_slack_error(e)}")
        sys.exit(1)

    results = run(directory, settings, logger)
    if results is None:
        sys.exit(1)

    for reason, stats in results.items():
        logger.info(f"Archived due to {reason}: {stats['successful']} of {stats['processed']} "
                    f"({stats['failed']} failed)")
    logger.info("Process completed")


if __name__ == "__main__":
    main()
