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

import asyncio
import json
import logging
import os
import sys
import time

from bitcoin.core import b2x

from merkleanchor import commitment
from merkleanchor.client import ProxyClient, StatusResolver
from merkleanchor.confirmations import ConfirmationTracker, MempoolClient
from merkleanchor.errors import MerkleAnchorError, ProtocolError, ValidationError
from merkleanchor.otsfile import detached_from_bytes, has_bitcoin_attestation, parse_attestations
from merkleanchor.polling import PollingStateMachine, Status
from merkleanchor.proxy import TimestampProxy, parse_digest_hex
from merkleanchor.server import run_server


def walk_files(root):
    """Yield (relative path, full path) for every regular file under root

    Sorted for stable output; the commitment itself doesn't depend on order.
    """
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for filename in sorted(filenames):
            path = os.path.join(dirpath, filename)
            if os.path.isfile(path):
                yield os.path.relpath(path, root), path


def read_files(root):
    files = []
    for rel_path, path in walk_files(root):
        try:
            with open(path, 'rb') as fd:
                files.append((rel_path, fd.read()))
        except OSError as exp:
            logging.error("Could not read %r: %s" % (path, exp))
            sys.exit(1)

    logging.debug("Read %d file(s) from %s" % (len(files), root))
    return files


def load_artifact(fd):
    try:
        artifact = commitment.loads(fd.read())
    except ValidationError as exp:
        logging.error("Invalid commitment artifact %r: %s" % (fd.name, exp))
        sys.exit(1)
    return artifact


def make_proxy(args):
    """Something with stamp() and upgrade(): the server, or the calendars directly"""
    if args.direct:
        return TimestampProxy.from_config(args.config)
    else:
        return ProxyClient(args.config.backend_url)


def write_new_file(path, data):
    try:
        with open(path, 'xb') as fd:
            fd.write(data)
    except IOError as exp:
        logging.error("Could not write %r: %s" % (path, exp))
        sys.exit(1)


def commit_command(args):
    if not os.path.isdir(args.directory):
        args.parser.error("%r is not a directory" % args.directory)

    folder_policy = None
    if args.folder_policy is not None:
        try:
            folder_policy = json.loads(args.folder_policy)
        except ValueError as exp:
            args.parser.error("Folder policy must be JSON: %s" % exp)

    files = read_files(args.directory)
    try:
        artifact = commitment.build_commitment(files, folder_policy=folder_policy)
    except ValidationError as exp:
        logging.error("Could not build commitment: %s" % exp)
        sys.exit(1)

    text = commitment.dumps(artifact)
    if args.output is None:
        print(text)
    else:
        write_new_file(args.output, text.encode('utf8'))

    logging.info("Merkle root %s over %d file(s), %s" %
                 (artifact['root'], artifact['summary']['fileCount'], artifact['summary']['totalBytesHuman']))


def verify_command(args):
    artifact = load_artifact(args.tree_fd)

    if not commitment.verify_artifact(artifact):
        logging.error("Commitment artifact is inconsistent: its leaves don't produce its root")
        sys.exit(1)

    result = commitment.verify_folder(artifact, read_files(args.directory))
    if result.file_count != result.artifact_file_count:
        logging.warning("Directory has %d file(s); commitment has %d" % (result.file_count, result.artifact_file_count))

    if result.ok:
        logging.info("Success! Directory matches Merkle root %s" % result.expected)
    else:
        logging.debug("Expected root %s" % result.expected)
        logging.error("Directory does not match commitment! Got root %s" % result.computed)
        sys.exit(1)


def verify_file_command(args):
    artifact = load_artifact(args.tree_fd)

    try:
        data = args.target_fd.read()
    except OSError as exp:
        logging.error("Could not read %r: %s" % (args.target_fd.name, exp))
        sys.exit(1)

    result = commitment.verify_file(artifact, data)
    if not result.ok:
        logging.error("%s: %s" % (args.target_fd.name, result.reason))
        sys.exit(1)

    logging.info("Success! %s is committed to by Merkle root %s" % (args.target_fd.name, artifact['root']))
    for step in result.proof:
        logging.debug("  %s %s" % (step.position, b2x(step.hash)))


def _stamp_target(args):
    """(root hex, default output filename) for the stamp target"""
    try:
        return b2x(parse_digest_hex(args.target)), args.target + '.ots'
    except ValidationError:
        pass

    try:
        with open(args.target, 'r') as fd:
            artifact = load_artifact(fd)
    except IOError as exp:
        args.parser.error("%r is neither a Merkle root nor a readable commitment artifact: %s" % (args.target, exp))

    return commitment.strip_hex(artifact['root']), args.target + '.ots'


async def _stamp_and_wait(machine, root_hex, output):
    written = []

    def save(session):
        if session.ots_proof is None or (written and written[-1] == session.ots_proof):
            return
        mode = 'wb' if written else 'xb'
        with open(output, mode) as fd:
            fd.write(session.ots_proof)
        written.append(session.ots_proof)
        logging.info("%s: %s" % (session.status, session.status_message))

    machine.on_change = save
    try:
        await machine.stamp(root_hex)
        return await machine.wait()
    finally:
        machine.close()


def stamp_command(args):
    root_hex, output = _stamp_target(args)
    if args.output is not None:
        output = args.output

    if os.path.exists(output):
        logging.error("Could not create timestamp: %r already exists" % output)
        sys.exit(1)

    if args.wait:
        client = ProxyClient(args.config.backend_url)
        resolver = StatusResolver(client, ConfirmationTracker.from_config(args.config))
        machine = PollingStateMachine(client, resolver, MempoolClient())
        try:
            session = asyncio.run(_stamp_and_wait(machine, root_hex, output))
        except (MerkleAnchorError, IOError) as exp:
            logging.error("Timestamp failed: %s" % exp)
            sys.exit(1)

        if session.status != Status.CONFIRMED:
            logging.error("Timestamp not confirmed: %s" % session.status_message)
            sys.exit(1)
        logging.info("Success! Timestamp confirmed; saved to %s" % output)
        return

    try:
        result = make_proxy(args).stamp(root_hex)
    except MerkleAnchorError as exp:
        logging.error("Timestamp failed: %s" % exp)
        sys.exit(1)

    for server in result.servers:
        logging.debug("%s: %s" % (server['url'], 'ok' if server['success'] else 'failed'))

    write_new_file(output, result.ots_proof)
    logging.info("Timestamp for %s saved to %s" % (root_hex, output))


def upgrade_proof(proxy, ots_proof, args):
    """Upgrade, optionally waiting until there is a Bitcoin attestation"""
    while True:
        try:
            result = proxy.upgrade(ots_proof)
        except MerkleAnchorError as exp:
            if not args.wait or not exp.retryable:
                raise
            logging.warning("Upgrade failed, will retry: %s" % exp)
        else:
            ots_proof = result.ots_proof
            if result.upgraded or not args.wait:
                return result

        logging.info("Timestamp not complete; waiting %d sec before trying again" % args.wait_interval)
        time.sleep(args.wait_interval)


def upgrade_command(args):
    proxy = make_proxy(args)
    tracker = ConfirmationTracker.from_config(args.config)

    incomplete = False
    for old_stamp_fd in args.files:
        logging.debug("Upgrading %s" % old_stamp_fd.name)

        old_proof = old_stamp_fd.read()
        old_stamp_fd.close()

        try:
            result = upgrade_proof(proxy, old_proof, args)
        except MerkleAnchorError as exp:
            logging.error("Could not upgrade timestamp %r: %s" % (old_stamp_fd.name, exp))
            sys.exit(1)

        if result.ots_proof != old_proof and not args.dry_run:
            backup_name = old_stamp_fd.name + '.bak'
            logging.debug("Got new timestamp data; renaming existing timestamp to %r" % backup_name)

            if os.path.exists(backup_name):
                logging.error("Could not backup timestamp: %r already exists" % backup_name)
                sys.exit(1)

            try:
                os.rename(old_stamp_fd.name, backup_name)
            except IOError as exp:
                logging.error("Could not backup timestamp: %s" % exp)
                sys.exit(1)

            write_new_file(old_stamp_fd.name, result.ots_proof)

        if result.upgraded:
            conf = tracker.confirmations(result.block_height)
            if conf.available:
                logging.info("Success! Timestamp complete; Bitcoin block %d, %d confirmation%s" %
                             (result.block_height, conf.confirmations, '' if conf.confirmations == 1 else 's'))
            else:
                logging.info("Success! Timestamp complete; Bitcoin block %d" % result.block_height)
        else:
            logging.warning("Failed! Timestamp not complete")
            incomplete = True

    if incomplete:
        sys.exit(1)


def info_command(args):
    data = args.file.read()

    try:
        detached_timestamp = detached_from_bytes(data)
    except ProtocolError as exp:
        logging.debug("Not a full timestamp file (%s); reading as an attestation stream" % exp)
        try:
            version, attestations = parse_attestations(data)
        except ProtocolError as exp:
            logging.error("Invalid timestamp file %r: %s" % (args.file.name, exp))
            sys.exit(1)

        print("Attestation stream, version %d:" % version)
        for attestation in attestations:
            print("  %r" % attestation)

    else:
        print("File %s hash: %s" % (detached_timestamp.file_hash_op.HASHLIB_NAME, b2x(detached_timestamp.file_digest)))
        print("Timestamp:")
        print(detached_timestamp.timestamp.str_tree(verbosity=args.verbosity))

    check = has_bitcoin_attestation(data)
    if check.has_attestation:
        print("Bitcoin block attestation at height %d" % check.block_height)
    else:
        print("No Bitcoin attestation yet")


def serve_command(args):
    run_server(args.config)
