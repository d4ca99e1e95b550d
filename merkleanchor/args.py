# Copyright (C) 2026 The merkle-anchor developers
#
# This file is part of merkle-anchor.
#
# It is subject to the license terms in the LICENSE file found in the top-level
# directory of this distribution.
#
# No part of merkle-anchor, including this file, may be copied,
# modified, propagated, or distributed except according to the terms contained
# in the LICENSE file.

import argparse
import logging
import socket
import sys

import merkleanchor
import merkleanchor.cmds

from merkleanchor import config
from merkleanchor.errors import ValidationError


def make_common_options_arg_parser():
    parser = argparse.ArgumentParser(description="Merkle commitments over files, anchored in Bitcoin with OpenTimestamps.")
    parser.add_argument('--version', action='version', version='v%s' % merkleanchor.__version__)

    parser.add_argument("-q", "--quiet", action="count", default=0,
                        help="Be more quiet.")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Be more verbose. Both -v and -q may be used multiple times.")

    parser.add_argument("--backend", metavar='URL', dest='backend_url', type=str, default=None,
                        help="merkle-anchor server to stamp and upgrade through. "
                             "Default: $MERKLE_ANCHOR_BACKEND_URL or %s" % config.DEFAULT_BACKEND_URL)
    parser.add_argument("--direct", action="store_true", default=False,
                        help="Talk to the pool and calendar servers directly rather than "
                             "through a merkle-anchor server.")

    parser.add_argument('-c', '--calendar', metavar='URL', dest='calendar_urls', action='append', type=str,
                        default=[],
                        help='Calendar server to upgrade timestamps from. May be specified multiple times. '
                             'Default: %s' % ', '.join(config.DEFAULT_CALENDAR_SERVERS))
    parser.add_argument('-p', '--pool', metavar='URL', dest='pool_urls', action='append', type=str,
                        default=[],
                        help='Pool server to submit digests to. May be specified multiple times. '
                             'Default: %s' % ', '.join(config.DEFAULT_POOL_SERVERS))
    parser.add_argument("-m", type=int, dest='quorum', default=None,
                        help="Digests are sent to every pool server; the timestamp is "
                             "considered done if at least M of them replied. "
                             "Default: %d" % config.DEFAULT_QUORUM)
    parser.add_argument("--timeout", type=int, default=None,
                        help="Timeout before giving up on a calendar. "
                             "Default: %d" % config.CALENDAR_TIMEOUT)

    parser.add_argument("--wait-interval", action="store", type=int, default=30,
                        help=argparse.SUPPRESS) # best if users don't change this and DoS attack the calendars...

    parser.add_argument("--socks5-proxy", type=str,
                        help="Route all traffic through a socks5 proxy, "
                              "including DNS queries. The default port is 1080. "
                              "Format: domain[:port] (e.g. localhost:9050)")

    parser.add_argument("--bitcoin-node", dest="bitcoin_node", type=str,
                        help="Bitcoin node URL to ask for the chain tip, in addition to "
                             "the public block explorers")

    return parser


def setup_socks5_proxy(args):
    try:
        import socks
    except ImportError as exp:
        logging.error("Can not use SOCKS5 proxy: %s" % exp)
        sys.exit(1)

    e = args.socks5_proxy.split(':')
    s5_hostname = e[0]
    if len(e) > 1:
        if e[1].isdigit():
            s5_port = int(e[1])
        else:
            args.parser.error("SOCKS5 proxy port must be an integer; got %s" % e[1])
    else:
        s5_port = 1080

    socks.set_default_proxy(socks.SOCKS5,
                            s5_hostname,
                            s5_port)

    # Monkey patch socket to use SOCKS5 proxy
    socket.socket = socks.socksocket

    # This should prevent DNS leaks
    def create_connection(address, timeout=None, source_address=None):
        sock = socks.socksocket()
        if timeout is not None:
            sock.settimeout(timeout)
        sock.connect(address)
        return sock
    socket.create_connection = create_connection


def handle_common_options(args, parser):
    args.parser = parser
    args.verbosity = args.verbose - args.quiet

    if args.socks5_proxy is not None:
        setup_socks5_proxy(args)

    try:
        args.config = config.Config.from_env(backend_url=args.backend_url,
                                             pool_servers=args.pool_urls or None,
                                             calendar_servers=args.calendar_urls or None,
                                             quorum=args.quorum,
                                             calendar_timeout=args.timeout,
                                             bitcoin_node=args.bitcoin_node,
                                             host=getattr(args, 'host', None),
                                             port=getattr(args, 'port', None))
    except ValidationError as exp:
        parser.error(str(exp))

    return args


def parse_merkle_anchor_args(raw_args):
    parser = make_common_options_arg_parser()

    subparsers = parser.add_subparsers(title='Subcommands',
                                       description='All operations are done through subcommands:')

    # ----- commit -----
    parser_commit = subparsers.add_parser('commit', aliases=['c'],
                                          help='Compute the Merkle commitment over a directory')
    parser_commit.add_argument('directory', metavar='DIR', type=str,
                               help='Directory to commit to')
    parser_commit.add_argument('-o', '--output', metavar='FILE', dest='output', type=str, default=None,
                               help='Write the commitment artifact to FILE rather than stdout')
    parser_commit.add_argument('--policy', metavar='JSON', dest='folder_policy', type=str, default=None,
                               help='Folder policy to record in the artifact, as JSON')

    # ----- verify -----
    parser_verify = subparsers.add_parser('verify', aliases=['v'],
                                          help='Verify a directory against a commitment artifact')
    parser_verify.add_argument('tree_fd', metavar='TREE', type=argparse.FileType('r'),
                               help='Commitment artifact')
    parser_verify.add_argument('directory', metavar='DIR', type=str,
                               help='Directory to verify')

    # ----- verify-file -----
    parser_verify_file = subparsers.add_parser('verify-file',
                                               help='Verify that a file is part of a commitment')
    parser_verify_file.add_argument('tree_fd', metavar='TREE', type=argparse.FileType('r'),
                                    help='Commitment artifact')
    parser_verify_file.add_argument('target_fd', metavar='FILE', type=argparse.FileType('rb'),
                                    help='File to verify')

    # ----- stamp -----
    parser_stamp = subparsers.add_parser('stamp', aliases=['s'],
                                         help='Timestamp a Merkle root')
    parser_stamp.add_argument('target', metavar='ROOT|TREE', type=str,
                              help='Hex Merkle root, or a commitment artifact')
    parser_stamp.add_argument('-o', '--output', metavar='FILE', dest='output', type=str, default=None,
                              help='Timestamp filename. Default: TREE.ots, or ROOT.ots')
    parser_stamp.add_argument("-w", "--wait", action="store_true", default=False,
                              help="Wait until the timestamp is confirmed in the Bitcoin "
                                   "blockchain instead of returning immediately.")

    # ----- upgrade -----
    parser_upgrade = subparsers.add_parser('upgrade', aliases=['u'],
                                           help='Upgrade pending timestamps with Bitcoin attestations')
    parser_upgrade.add_argument('-n', '--dry-run', action='store_true', default=False,
                                help='Perform a trial upgrade without modifying the existing timestamp.')
    parser_upgrade.add_argument("-w", "--wait", action="store_true", default=False,
                                help="Wait until a complete timestamp is available instead "
                                     "of returning immediately.")
    parser_upgrade.add_argument('files', metavar='FILE', type=argparse.FileType('rb'),
                                nargs='+',
                                help='Existing timestamp(s); moved to FILE.bak')

    # ----- info -----
    parser_info = subparsers.add_parser('info', aliases=['i'],
                                        help='Show information on a timestamp')
    parser_info.add_argument('file', metavar='FILE', type=argparse.FileType('rb'),
                             help='Filename')

    # ----- serve -----
    parser_serve = subparsers.add_parser('serve',
                                         help='Run the timestamp proxy HTTP server')
    parser_serve.add_argument('--host', type=str, default=None,
                              help='Address to listen on. Default: $HOST or %s' % config.DEFAULT_HOST)
    parser_serve.add_argument('--port', type=int, default=None,
                              help='Port to listen on. Default: $PORT or %d' % config.DEFAULT_PORT)

    parser_commit.set_defaults(cmd_func=merkleanchor.cmds.commit_command)
    parser_verify.set_defaults(cmd_func=merkleanchor.cmds.verify_command)
    parser_verify_file.set_defaults(cmd_func=merkleanchor.cmds.verify_file_command)
    parser_stamp.set_defaults(cmd_func=merkleanchor.cmds.stamp_command)
    parser_upgrade.set_defaults(cmd_func=merkleanchor.cmds.upgrade_command)
    parser_info.set_defaults(cmd_func=merkleanchor.cmds.info_command)
    parser_serve.set_defaults(cmd_func=merkleanchor.cmds.serve_command)

    args = parser.parse_args(raw_args)
    args = handle_common_options(args, parser)

    return args
